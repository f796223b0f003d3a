from . import (
    acumatica,
    audit,
    auth,
    customers,
    dashboard,
    documents,
    emails,
    gateways,
    payments,
    public,
    settings,
    stripe,
    users,
    webhooks,
)

ROUTERS = [
    auth.router,
    users.router,
    settings.router,
    customers.router,
    documents.router,
    emails.router,
    payments.router,
    stripe.router,
    gateways.router,
    webhooks.router,
    acumatica.router,
    audit.router,
    dashboard.router,
    public.router,
]
