"""
secrets.py — Centralized configuration & secret registry

Single source of truth for every environment key the quote service reads.

Env vars:
  DASH_USER / DASH_PASS   — operator HTTP Basic credentials
  SECRET_KEY              — Flask session signing key
  APP_URL                 — public base URL (links in e-mails, local artifact URLs)
  ARTIFACT_STORE          — local | blob
  BLOB_READ_WRITE_TOKEN   — blob storage write token
  BLOB_API_URL            — blob storage endpoint
  RESEND_API_KEY          — transactional e-mail API key
  EMAIL_FROM / ADMIN_EMAIL
  STRIPE_SECRET_KEY / DEPOSIT_PRICE_ID
  QUOTE_LOGO_URL          — remote logo for the PDF header
  LOG_LEVEL / DISABLE_RATE_LIMIT

Security:
  - Sensitive values are never logged, only reported as set / not set
  - Validate on startup and warn loudly about missing keys
"""

import os
import logging

log = logging.getLogger("quotes.secrets")

# ─── Definitions ────────────────────────────────────────────────────────────

_REGISTRY = {
    # Operator auth
    "dash_user": {
        "env": "DASH_USER",
        "required": True,
        "desc": "Operator login username",
        "used_by": ["api"],
        "default": "orylis",
    },
    "dash_pass": {
        "env": "DASH_PASS",
        "required": True,
        "desc": "Operator login password",
        "used_by": ["api"],
        "sensitive": True,
    },
    "secret_key": {
        "env": "SECRET_KEY",
        "required": True,
        "desc": "Flask session signing key",
        "used_by": ["api"],
        "sensitive": True,
    },
    "app_url": {
        "env": "APP_URL",
        "required": False,
        "desc": "Public base URL",
        "used_by": ["notify", "checkout", "storage"],
        "default": "http://localhost:5000",
    },
    # Artifacts
    "artifact_store": {
        "env": "ARTIFACT_STORE",
        "required": False,
        "desc": "Artifact backend (local | blob)",
        "used_by": ["storage"],
        "default": "local",
    },
    "blob_token": {
        "env": "BLOB_READ_WRITE_TOKEN",
        "required": False,
        "desc": "Blob storage write token",
        "used_by": ["storage"],
        "sensitive": True,
    },
    "blob_api_url": {
        "env": "BLOB_API_URL",
        "required": False,
        "desc": "Blob storage endpoint",
        "used_by": ["storage"],
    },
    # E-mail
    "resend_key": {
        "env": "RESEND_API_KEY",
        "required": False,
        "desc": "Resend e-mail API key",
        "used_by": ["notify"],
        "sensitive": True,
    },
    "email_from": {
        "env": "EMAIL_FROM",
        "required": False,
        "desc": "Sender address",
        "used_by": ["notify"],
        "default": "contact@orylis.fr",
    },
    "admin_email": {
        "env": "ADMIN_EMAIL",
        "required": False,
        "desc": "Agency inbox for signed-quote alerts",
        "used_by": ["notify"],
        "default": "orylisfrance@gmail.com",
    },
    # Stripe
    "stripe_key": {
        "env": "STRIPE_SECRET_KEY",
        "required": False,
        "desc": "Stripe secret key (deposit checkout)",
        "used_by": ["checkout"],
        "sensitive": True,
    },
    "deposit_price": {
        "env": "DEPOSIT_PRICE_ID",
        "required": False,
        "desc": "Stripe price of the launch deposit",
        "used_by": ["checkout"],
    },
    # Rendering
    "quote_logo_url": {
        "env": "QUOTE_LOGO_URL",
        "required": False,
        "desc": "Remote logo for the quote header",
        "used_by": ["render"],
    },
}


# ─── Lookup ──────────────────────────────────────────────────────────────────

def get_key(name: str) -> str:
    """Value of a registry entry: env var, else its default, else ""."""
    try:
        entry = _REGISTRY[name]
    except KeyError:
        log.warning("Unknown config key requested: %s", name)
        return ""
    return os.environ.get(entry["env"]) or entry.get("default", "")


def mask(value: str) -> str:
    """Printable form of a secret: a short prefix and the length."""
    if not value:
        return "(not set)"
    if len(value) > 12:
        return f"{value[:8]}****({len(value)} chars)"
    return f"{value[:4]}****"


# ─── Startup report ──────────────────────────────────────────────────────────

def _describe(name: str, entry: dict) -> dict:
    val = get_key(name)
    if entry.get("sensitive"):
        shown = "set" if val else "not set"
    else:
        shown = mask(val)
    return {
        "set": bool(val),
        "env": entry["env"],
        "desc": entry["desc"],
        "masked": shown,
        "required": bool(entry.get("required")),
        "used_by": list(entry["used_by"]),
    }


def validate_all() -> dict:
    """Status of every key plus the warnings worth shouting about at boot."""
    described = {name: _describe(name, entry) for name, entry in _REGISTRY.items()}
    warnings = [f"REQUIRED config missing: {d['env']} ({d['desc']})"
                for d in described.values() if d["required"] and not d["set"]]

    if get_key("artifact_store") == "blob" and not get_key("blob_token"):
        warnings.append("ARTIFACT_STORE=blob but BLOB_READ_WRITE_TOKEN is not set: "
                        "quote generation will fail")
    if not get_key("resend_key"):
        warnings.append("RESEND_API_KEY not set: quotes are issued but no e-mail goes out")

    configured = sum(d["set"] for d in described.values())
    return {
        "secrets": described,
        "total": len(described),
        "set": configured,
        "missing": len(described) - configured,
        "warnings": warnings,
    }


def startup_check():
    """Log the report once at boot. Values of sensitive keys never appear."""
    report = validate_all()
    log.info("Config: %d/%d keys set", report["set"], report["total"])
    for warning in report["warnings"]:
        log.warning("CONFIG: %s", warning)

    components = sorted({c for d in report["secrets"].values() if d["set"] for c in d["used_by"]})
    if components:
        log.info("Configured components: %s", ", ".join(components))
    return report
