"""Payment gateway clients (Stripe SDK wrapper, Authorize.net JSON API)."""
