"""
notify_agent.py — Quote lifecycle e-mails

CHANNEL:
  E-mail through the Resend HTTP API (RESEND_API_KEY), sender EMAIL_FROM.
  3 attempts per message (0.3s, then 1s between attempts).

EVENTS:
  ┌──────────────────────────┬───────────────┬─────────────────────────────┐
  │ Event                    │ Recipient     │ Link                        │
  ├──────────────────────────┼───────────────┼─────────────────────────────┤
  │ quote_created            │ project owner │ {APP_URL}/quotes/<id>/sign  │
  │ quote_signed_prospect    │ project owner │ {APP_URL}/quotes/<id>/sign  │
  │ quote_signed_admin       │ ADMIN_EMAIL   │ signed PDF                  │
  └──────────────────────────┴───────────────┴─────────────────────────────┘

Every dispatch, delivered or not, is written to the `notifications` table.
Sending never raises: callers get {"ok": bool, ...} and decide.

SETUP (env vars):
  RESEND_API_KEY = re_xxx
  EMAIL_FROM     = contact@orylis.fr     (display name "Orylis.fr")
  ADMIN_EMAIL    = orylisfrance@gmail.com
  APP_URL        = https://app.orylis.fr
"""

import os
import re
import time
import logging
from html import escape

import requests

from src.core import db

log = logging.getLogger("quotes.notify")

RESEND_API_URL = "https://api.resend.com/emails"
DEFAULT_EMAIL_FROM = "contact@orylis.fr"
DEFAULT_ADMIN_EMAIL = "orylisfrance@gmail.com"
DEFAULT_APP_URL = "https://app.orylis.fr"

MAX_ATTEMPTS = 3
RETRY_DELAYS = (0.3, 1.0)
SEND_TIMEOUT = 15


class NotifyError(Exception):
    """E-mail API refused or could not be reached."""


def _app_url() -> str:
    return os.environ.get("APP_URL", DEFAULT_APP_URL).rstrip("/")


def _sender() -> str:
    return f"Orylis.fr <{os.environ.get('EMAIL_FROM', DEFAULT_EMAIL_FROM)}>"


def _admin_email() -> str:
    return os.environ.get("ADMIN_EMAIL", DEFAULT_ADMIN_EMAIL)


def _user_info(user_id: str) -> dict:
    """Display name (profile → account) and e-mail of an account."""
    user = db.get_user(user_id) or {}
    profile = db.get_profile(user_id) or {}
    return {
        "name": profile.get("full_name") or user.get("name"),
        "email": user.get("email"),
    }


# ══════════════════════════════════════════════════════════════════════════════
# TRANSPORT
# ══════════════════════════════════════════════════════════════════════════════

def _post_email(payload: dict) -> str:
    """One call to the e-mail API. Returns the provider message id."""
    resp = requests.post(
        RESEND_API_URL,
        json=payload,
        headers={"Authorization": f"Bearer {os.environ.get('RESEND_API_KEY', '')}"},
        timeout=SEND_TIMEOUT,
    )
    if resp.status_code >= 300:
        raise NotifyError(f"HTTP {resp.status_code}: {resp.text[:200]}")
    try:
        return resp.json().get("id", "")
    except ValueError:
        return ""


def send_email(to: str, subject: str, html: str, event_type: str,
               quote_id: str = None) -> dict:
    """Send one e-mail with retries and record the outcome."""
    if not os.environ.get("RESEND_API_KEY"):
        log.warning("RESEND_API_KEY not configured, email not sent: %s", subject,
                    extra={"quote_id": quote_id})
        db.log_notification(event_type, to, subject, quote_id, delivered=False,
                            error="RESEND_API_KEY not configured")
        return {"ok": False, "error": "RESEND_API_KEY not configured"}

    payload = {
        "from": _sender(),
        "to": to,
        "subject": subject,
        "html": html,
        "text": re.sub(r"<[^>]*>", "", html),
    }

    error = "Unknown error"
    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            message_id = _post_email(payload)
            log.info("Email sent: %s → %s", subject[:60], to,
                     extra={"quote_id": quote_id})
            db.log_notification(event_type, to, subject, quote_id, delivered=True)
            return {"ok": True, "id": message_id, "to": to}
        except (requests.RequestException, NotifyError) as e:
            error = str(e)
            log.warning("Email failed (attempt %d/%d): %s", attempt, MAX_ATTEMPTS, error,
                        extra={"quote_id": quote_id})
            if attempt < MAX_ATTEMPTS:
                time.sleep(RETRY_DELAYS[min(attempt - 1, len(RETRY_DELAYS) - 1)])

    db.log_notification(event_type, to, subject, quote_id, delivered=False, error=error)
    return {"ok": False, "error": error}


# ══════════════════════════════════════════════════════════════════════════════
# TEMPLATE
# ══════════════════════════════════════════════════════════════════════════════

def email_template(content: str, cta_text: str = None, cta_url: str = None) -> str:
    cta = ""
    if cta_text and cta_url:
        cta = f"""
        <p style="margin:24px 0 16px 0;">
          <a href="{escape(cta_url)}" style="display:inline-block;background:#1b5bff;color:#ffffff;text-decoration:none;padding:12px 18px;font-weight:bold;font-size:14px;border-radius:6px;">{escape(cta_text)}</a>
        </p>
        <p style="margin:0 0 18px 0;font-size:12px;line-height:18px;color:#6b7280;">
          Si le bouton ne fonctionne pas, copiez/collez ce lien dans votre navigateur&nbsp;:<br>
          <a href="{escape(cta_url)}" style="color:#2563eb;text-decoration:underline;">{escape(cta_url)}</a>
        </p>"""

    return f"""<!doctype html>
<html lang="fr"><body style="margin:0;padding:0;background:#f5f7fb;">
<table role="presentation" width="100%" cellpadding="0" cellspacing="0" style="background:#f5f7fb;">
  <tr><td align="center" style="padding:24px 12px;">
    <table role="presentation" width="600" cellpadding="0" cellspacing="0" style="width:600px;max-width:100%;background:#ffffff;border:1px solid #eaecef;">
      <tr><td style="padding:24px 20px;font-family:Arial,Helvetica,sans-serif;color:#1a202c;">
        {content}
        {cta}
        <p style="margin:24px 0 0 0;font-size:11px;color:#9ca3af;">Cet e-mail fait suite à votre demande et à la création de votre espace client Orylis.</p>
      </td></tr>
    </table>
  </td></tr>
</table>
</body></html>"""


# ══════════════════════════════════════════════════════════════════════════════
# LIFECYCLE EVENTS
# ══════════════════════════════════════════════════════════════════════════════

def send_quote_created(owner_id: str, project_name: str, pdf_url: str,
                       formatted_number: str, quote_id: str) -> dict:
    """Devis prêt → owner, with the link to the signing page."""
    user = _user_info(owner_id)
    if not user["email"]:
        log.warning("Quote %s: owner %s has no email", formatted_number, owner_id,
                    extra={"quote_id": quote_id})
        return {"ok": False, "error": "User email not found"}

    name = escape(user["name"] or "Bonjour")
    content = f"""
    <h2 style="color:#1a202c;margin-top:0;">Votre devis est prêt !</h2>
    <p>Bonjour {name},</p>
    <p>Suite à votre demande, voici le devis n°{escape(formatted_number)} pour votre projet <strong>{escape(project_name)}</strong>.</p>
    <p>Pour valider le lancement du projet, merci de consulter et signer le devis en ligne.</p>
    <p style="font-size:12px;color:#6b7280;">Version PDF : <a href="{escape(pdf_url)}">{escape(pdf_url)}</a></p>
    """
    return send_email(
        to=user["email"],
        subject=f"Votre devis pour le projet {project_name} (Devis #{formatted_number})",
        html=email_template(content, "Consulter le devis", f"{_app_url()}/quotes/{quote_id}/sign"),
        event_type="quote_created",
        quote_id=quote_id,
    )


def send_quote_signed_to_prospect(owner_id: str, project_name: str, quote_id: str,
                                  signed_pdf_url: str) -> dict:
    user = _user_info(owner_id)
    if not user["email"]:
        return {"ok": False, "error": "User email not found"}

    name = escape(user["name"] or "Bonjour")
    content = f"""
    <h2 style="color:#1a202c;margin-top:0;">Devis signé avec succès !</h2>
    <p>Bonjour {name},</p>
    <p>Merci d'avoir signé le devis pour votre projet <strong>{escape(project_name)}</strong>.</p>
    <p><strong>Prochaine étape importante : le règlement de l'acompte.</strong></p>
    <p>Si vous n'avez pas été redirigé automatiquement vers la page de paiement, vous pouvez y accéder avec le bouton ci-dessous.</p>
    <p>Une fois l'acompte réglé, vous aurez accès à votre espace client pour commencer l'onboarding.</p>
    <p style="font-size:12px;color:#6b7280;">Votre devis signé : <a href="{escape(signed_pdf_url)}">{escape(signed_pdf_url)}</a></p>
    """
    return send_email(
        to=user["email"],
        subject=f"Devis signé : {project_name} - Acompte à régler",
        html=email_template(content, "Accéder au paiement", f"{_app_url()}/quotes/{quote_id}/sign"),
        event_type="quote_signed_prospect",
        quote_id=quote_id,
    )


def send_quote_signed_to_admin(quote_id: str, project_name: str, prospect_name: str,
                               prospect_email: str, signed_pdf_url: str) -> dict:
    content = f"""
    <h2 style="color:#1a202c;margin-top:0;">Nouveau devis signé !</h2>
    <p>Un devis vient d'être signé par un prospect.</p>
    <div style="background-color:#f7f9fb;padding:16px;border-radius:8px;margin:16px 0;">
      <p style="margin:0;"><strong>Prospect :</strong> {escape(prospect_name or '')}</p>
      <p style="margin:6px 0 0 0;"><strong>Email :</strong> {escape(prospect_email or '')}</p>
      <p style="margin:6px 0 0 0;"><strong>Projet :</strong> {escape(project_name)}</p>
      <p style="margin:6px 0 0 0;"><strong>ID du devis :</strong> {escape(quote_id)}</p>
    </div>
    <p>Le projet peut maintenant être lancé en phase de développement.</p>
    """
    return send_email(
        to=_admin_email(),
        subject=f"Devis signé : {project_name}",
        html=email_template(content, "Télécharger le devis signé", signed_pdf_url),
        event_type="quote_signed_admin",
        quote_id=quote_id,
    )
