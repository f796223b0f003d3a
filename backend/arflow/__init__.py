"""ARFlow: multi-tenant accounts receivable backend.

The package is layered the usual way: `models` (tables), `repositories`
(queries), `services` / `payment_services` / `acumatica_services`
(business rules) and `routes` (HTTP controllers assembled in `main`).
Gateways to Stripe, Authorize.net and Acumatica live in `gateways` and
`acumatica`.
"""
