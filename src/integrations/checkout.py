"""
Stripe Checkout — deposit payment after a prospect signs
=========================================================

Creates a one-line hosted Checkout Session for the launch deposit.
Called over the REST API with form-encoded parameters (Stripe's wire format).

API Reference: https://docs.stripe.com/api/checkout/sessions/create

Required env vars:
  STRIPE_SECRET_KEY  - sk_live_... / sk_test_...
  DEPOSIT_PRICE_ID   - price_... of the deposit product
  APP_URL            - base for success/cancel redirects
"""

import os
import logging

import requests

log = logging.getLogger("quotes.checkout")

# ─── Configuration ───────────────────────────────────────────────────────────

STRIPE_API_BASE = "https://api.stripe.com/v1"
DEFAULT_DEPOSIT_PRICE_ID = "price_1SHgV0DmuUuPWn47voeXABRu"
CHECKOUT_TIMEOUT = 20


class CheckoutError(Exception):
    """Checkout session could not be created."""


def _stripe_configured() -> bool:
    return bool(os.environ.get("STRIPE_SECRET_KEY"))


# ─── Session payload ─────────────────────────────────────────────────────────

def deposit_session_params(quote_id: str, project_id: str, user_id: str,
                           email: str = None) -> dict:
    """
    Form fields for POST /v1/checkout/sessions.

    Stripe expects nested objects flattened with bracket keys:
      line_items[0][price], metadata[projectId], ...
    """
    app_url = os.environ.get("APP_URL", "http://localhost:5000").rstrip("/")
    params = {
        "mode": "payment",
        "payment_method_types[0]": "card",
        "line_items[0][price]": os.environ.get("DEPOSIT_PRICE_ID", DEFAULT_DEPOSIT_PRICE_ID),
        "line_items[0][quantity]": "1",
        "metadata[projectId]": project_id,
        "metadata[userId]": user_id,
        "metadata[type]": "deposit",
        "metadata[quoteId]": quote_id,
        "allow_promotion_codes": "true",
        "success_url": f"{app_url}/onboarding?success=deposit_paid",
        "cancel_url": f"{app_url}/quotes/{quote_id}/sign?canceled=true",
    }
    if email:
        params["customer_email"] = email
    return params


# ─── API call ────────────────────────────────────────────────────────────────

def create_deposit_checkout(quote_id: str, project_id: str, user_id: str,
                            email: str = None) -> str:
    """Create the deposit Checkout Session. Returns its hosted URL."""
    if not _stripe_configured():
        raise CheckoutError("STRIPE_SECRET_KEY not configured")

    try:
        resp = requests.post(
            f"{STRIPE_API_BASE}/checkout/sessions",
            data=deposit_session_params(quote_id, project_id, user_id, email),
            auth=(os.environ["STRIPE_SECRET_KEY"], ""),
            timeout=CHECKOUT_TIMEOUT,
        )
    except requests.RequestException as e:
        raise CheckoutError(f"Stripe unreachable: {e}") from e

    try:
        body = resp.json()
    except ValueError:
        body = {}
    if resp.status_code >= 300:
        msg = (body.get("error") or {}).get("message") or f"HTTP {resp.status_code}"
        raise CheckoutError(f"Stripe refused the session: {msg}")

    url = body.get("url")
    if not url:
        raise CheckoutError("Stripe returned no checkout URL")
    log.info("Deposit checkout session %s created", body.get("id", "?"),
             extra={"quote_id": quote_id, "project_id": project_id})
    return url
