"""
src/core/quote_ledger.py — Quote lifecycle

STATES:
  pending ──sign──▶ signed      (terminal)
     │
     └──delete──▶ (removed)     cancelled quotes are deleted, the number stays burnt

OPERATIONS (each returns {"ok": True, ...} or {"ok": False, "error", "code"};
nothing raises across this boundary):
  create_quote_for_project(project_id)
  create_standalone_quote(full_name, email, project_name, ...)
  resend_quote(quote_id)
  delete_quote(quote_id)
  sign_quote(quote_id, signature_data_url, signer)
  request_deposit_checkout(quote_id, signer)
  get_quote(quote_id) / list_quotes(status)
  upload_quote_pdf(filename, data)

Create chain is strictly: number → render + store → persist pending row → notify.
Nothing is persisted unless the document is stored; notification is best effort.
"""

import re
import sqlite3
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from werkzeug.utils import secure_filename

from src.core import db
from src.core.accounts import ensure_account
from src.core.errors import (  # noqa: F401 (re-exported)
    QuoteError, NotFound, Conflict, ValidationError, InvalidState,
    Forbidden, RenderFailure, DependencyFailure,
)
from src.core.numbering import next_quote_number, format_quote_number
from src.core.storage import StorageError, get_store
from src.forms.quote_generator import generate_quote_pdf, format_issue_date
from src.forms.signature import decode_signature, is_blank_signature, render_signed_quote
from src.agents import notify_agent
from src.integrations.checkout import CheckoutError, create_deposit_checkout

log = logging.getLogger("quotes.ledger")

STATUSES = ("pending", "signed", "cancelled")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_UPLOAD_BYTES = 20 * 1024 * 1024


# ═══════════════════════════════════════════════════════════════════════════════
# QUOTE STATES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class _QuoteBase:
    id: str
    project_id: str
    number: int
    pdf_url: str
    amount: Optional[int] = None          # cents
    services: tuple = ()
    delay: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    render_context: dict = field(default_factory=dict, compare=False, repr=False)

    status = ""

    @property
    def formatted_number(self) -> str:
        return format_quote_number(self.number)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "number": self.number,
            "formatted_number": self.formatted_number,
            "status": self.status,
            "pdf_url": self.pdf_url,
            "signed_pdf_url": None,
            "signed_at": None,
            "amount": self.amount,
            "services": list(self.services),
            "delay": self.delay,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class PendingQuote(_QuoteBase):
    status = "pending"


@dataclass(frozen=True)
class SignedQuote(_QuoteBase):
    signed_pdf_url: str = ""
    signed_at: str = ""

    status = "signed"

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["signed_pdf_url"] = self.signed_pdf_url
        d["signed_at"] = self.signed_at
        return d


@dataclass(frozen=True)
class CancelledQuote(_QuoteBase):
    status = "cancelled"


def quote_from_row(row: dict):
    """DB row → PendingQuote | SignedQuote | CancelledQuote."""
    if not row:
        return None
    common = dict(
        id=row["id"],
        project_id=row["project_id"],
        number=row["number"],
        pdf_url=row["pdf_url"],
        amount=row.get("amount"),
        services=tuple(row.get("services") or ()),
        delay=row.get("delay"),
        created_at=row.get("created_at", ""),
        updated_at=row.get("updated_at", ""),
        render_context=row.get("render_context") or {},
    )
    status = row.get("status")
    if status == "signed":
        return SignedQuote(signed_pdf_url=row["signed_pdf_url"],
                           signed_at=row["signed_at"], **common)
    if status == "cancelled":
        return CancelledQuote(**common)
    return PendingQuote(**common)


@dataclass(frozen=True)
class Signer:
    """Who is signing: the project owner's session, or an operator."""
    user_id: Optional[str]
    role: str = "prospect"
    email: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role == "staff"


# ═══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def normalize_amount(amount) -> Optional[int]:
    """Euros → integer cents, half-up. 1490.5 → 149050. Empty/zero → None."""
    if amount is None or amount == "":
        return None
    if isinstance(amount, bool):
        raise ValidationError("Montant invalide.")
    try:
        value = Decimal(str(amount).replace(",", ".").strip())
    except InvalidOperation:
        raise ValidationError("Montant invalide.")
    if not value.is_finite():
        raise ValidationError("Montant invalide.")
    if value < 0:
        raise ValidationError("Le montant ne peut pas être négatif.")
    if value == 0:
        return None
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _clean_services(services) -> list:
    if services is None:
        return []
    if not isinstance(services, (list, tuple)):
        raise ValidationError("Les prestations doivent être une liste.")
    cleaned = []
    for s in services:
        if not isinstance(s, str):
            raise ValidationError("Chaque prestation doit être un texte.")
        if s.strip():
            cleaned.append(s.strip())
    return cleaned


def _resolve_owner(project: dict) -> dict:
    """Display name / email / phone / company of the project owner."""
    user = db.get_user(project["owner_id"]) or {}
    profile = db.get_profile(project["owner_id"]) or {}
    return {
        "name": profile.get("full_name") or user.get("name") or "Client",
        "email": user.get("email"),
        "phone": profile.get("phone"),
        "company": profile.get("company"),
    }


def build_render_context(number: int, project_name: str, party: dict,
                         amount_cents: Optional[int], services: list,
                         delay: Optional[str], issued_on: str = None) -> dict:
    return {
        "quote_number": format_quote_number(number),
        "prospect_name": party.get("name"),
        "prospect_email": party.get("email"),
        "prospect_phone": party.get("phone"),
        "company_name": party.get("company"),
        "project_name": project_name,
        "issued_on": issued_on or format_issue_date(),
        "amount": amount_cents / 100 if amount_cents is not None else None,
        "services": list(services or []),
        "delay": delay,
    }


def _notify(fn, *args, **kwargs) -> dict:
    """Best-effort dispatch: a failing notification never fails the operation."""
    name = getattr(fn, "__name__", "notification")
    try:
        result = fn(*args, **kwargs)
    except Exception as e:
        log.warning("Notification %s raised: %s", name, e, exc_info=True)
        return {"ok": False, "error": str(e)}
    if not result.get("ok"):
        log.warning("Notification %s not delivered: %s", name, result.get("error"))
    return result


def _load_quote(quote_id: str):
    quote = quote_from_row(db.get_quote(quote_id)) if quote_id else None
    if quote is None:
        raise NotFound("Devis introuvable.", quote_id=quote_id)
    return quote


def _run(op: str, generic_error: str, fn, **ctx) -> dict:
    """Operation boundary: typed errors → result dict, unexpected → logged + generic."""
    t0 = time.time()
    try:
        result = fn()
    except QuoteError as e:
        extra = {k: v for k, v in {**ctx, **e.context}.items()
                 if k in ("quote_id", "project_id", "quote_number")}
        log.info("%s refused (%s): %s", op, e.code, e.message, extra=extra)
        return {"ok": False, "error": e.message, "code": e.code}
    except Exception:
        log.exception("%s failed", op, extra=ctx)
        return {"ok": False, "error": generic_error, "code": "internal_error"}
    log.debug("%s done in %dms", op, int((time.time() - t0) * 1000), extra=ctx)
    return result


# ═══════════════════════════════════════════════════════════════════════════════
# CREATE
# ═══════════════════════════════════════════════════════════════════════════════

def _issue(project: dict, party: dict, amount_cents: Optional[int], services: list,
           delay: Optional[str], pdf_url: str = None, store=None):
    """number → render/store → persist → notify. Returns (PendingQuote, notify result)."""
    number = next_quote_number()
    context = None
    if not pdf_url:
        # kept only for our own renders; an uploaded document has no context
        context = build_render_context(number, project["name"], party,
                                       amount_cents, services, delay)
        pdf_url = generate_quote_pdf(context, store)

    try:
        quote_id = db.insert_quote({
            "project_id": project["id"],
            "number": number,
            "pdf_url": pdf_url,
            "status": "pending",
            "amount": amount_cents,
            "services": services or None,
            "delay": delay,
            "render_context": context,
        })
    except sqlite3.IntegrityError:
        raise Conflict("Un devis existe déjà pour ce projet.", project_id=project["id"])

    quote = _load_quote(quote_id)
    log.info("Quote %s issued for project %s", quote.formatted_number, project["id"],
             extra={"quote_id": quote.id, "project_id": project["id"],
                    "quote_number": quote.formatted_number})

    notified = _notify(notify_agent.send_quote_created, project["owner_id"],
                       project["name"], pdf_url, quote.formatted_number, quote.id)
    return quote, notified


def _resend_existing(project: dict, existing) -> dict:
    """The project already has its quote: re-send it if pending, else Conflict."""
    if not isinstance(existing, PendingQuote):
        raise Conflict("Un devis existe déjà pour ce projet.",
                       project_id=project["id"], quote_id=existing.id)
    notified = _notify(notify_agent.send_quote_created, project["owner_id"],
                       project["name"], existing.pdf_url,
                       existing.formatted_number, existing.id)
    log.info("Quote %s already pending, re-sent", existing.formatted_number,
             extra={"quote_id": existing.id, "project_id": project["id"]})
    return {"ok": True, "quote_id": existing.id, "resent": True,
            "notified": bool(notified.get("ok")),
            "message": "Devis déjà existant, renvoi de l'email effectué."}


def create_quote_for_project(project_id: str, store=None) -> dict:
    """Issue the quote of an existing project and e-mail it to the owner.

    A pending quote already on the project is re-sent instead.
    """
    def op():
        project = db.get_project(project_id) if project_id else None
        if not project:
            raise NotFound("Projet introuvable.", project_id=project_id)

        existing = quote_from_row(db.get_quote_for_project(project_id))
        if existing is not None:
            return _resend_existing(project, existing)

        party = _resolve_owner(project)
        if not party["email"]:
            raise ValidationError("L'email du prospect est manquant.", project_id=project_id)

        try:
            quote, notified = _issue(project, party, None, [], None, store=store)
        except Conflict:
            # another request issued this project's quote while we were rendering
            existing = quote_from_row(db.get_quote_for_project(project_id))
            if existing is None:
                raise
            log.info("Concurrent create on project %s, using quote %s",
                     project_id, existing.formatted_number,
                     extra={"quote_id": existing.id, "project_id": project_id})
            return _resend_existing(project, existing)
        return {"ok": True, "quote_id": quote.id, "number": quote.formatted_number,
                "pdf_url": quote.pdf_url, "notified": bool(notified.get("ok")),
                "message": "Devis généré et envoyé avec succès."}

    return _run("create_quote_for_project", "Erreur lors de la génération du devis.",
                op, project_id=project_id)


def create_standalone_quote(full_name: str, email: str, project_name: str,
                            company: str = None, amount=None, services=None,
                            delay: str = None, pdf_url: str = None, store=None) -> dict:
    """Quote for a prospect without a project: shadow account + project + quote."""
    def op():
        name = (full_name or "").strip() if isinstance(full_name, str) else ""
        mail = (email or "").strip().lower() if isinstance(email, str) else ""
        pname = (project_name or "").strip() if isinstance(project_name, str) else ""
        if not name:
            raise ValidationError("Le nom du prospect est requis.")
        if not mail or not _EMAIL_RE.match(mail):
            raise ValidationError("Email invalide.")
        if not pname:
            raise ValidationError("Le nom du projet est requis.")
        amount_cents = normalize_amount(amount)
        lines = _clean_services(services)
        delay_txt = delay.strip() if isinstance(delay, str) and delay.strip() else None
        comp = company.strip() if isinstance(company, str) and company.strip() else None

        account = ensure_account(mail, name, comp)
        project = db.insert_project(account.account_id, pname, status="onboarding", progress=0)
        party = {"name": name, "email": mail, "phone": None, "company": comp}

        try:
            quote, notified = _issue(project, party, amount_cents, lines, delay_txt,
                                     pdf_url=pdf_url or None, store=store)
        except Exception:
            db.delete_project(project["id"])
            log.warning("Standalone create aborted, project %s removed", project["id"],
                        extra={"project_id": project["id"]})
            raise

        result = {"ok": True, "quote_id": quote.id, "number": quote.formatted_number,
                  "pdf_url": quote.pdf_url, "project_id": project["id"],
                  "account_id": account.account_id,
                  "account_created": account.created,
                  "notified": bool(notified.get("ok")),
                  "message": "Devis créé et envoyé avec succès."}
        if account.created:
            result["one_time_password"] = account.one_time_password
        return result

    return _run("create_standalone_quote", "Erreur lors de la création du devis.", op)


# ═══════════════════════════════════════════════════════════════════════════════
# RESEND / DELETE
# ═══════════════════════════════════════════════════════════════════════════════

def resend_quote(quote_id: str) -> dict:
    def op():
        quote = _load_quote(quote_id)
        if not isinstance(quote, PendingQuote):
            raise InvalidState("Seuls les devis en attente peuvent être relancés",
                               quote_id=quote_id)
        project = db.get_project(quote.project_id)
        result = _notify(notify_agent.send_quote_created, project["owner_id"],
                         project["name"], quote.pdf_url, quote.formatted_number, quote.id)
        if not result.get("ok"):
            raise DependencyFailure(f"Échec de l'envoi de la relance : {result.get('error')}",
                                    quote_id=quote_id)
        return {"ok": True, "quote_id": quote.id, "message": "Relance envoyée avec succès"}

    return _run("resend_quote", "Erreur lors de la relance", op, quote_id=quote_id)


def delete_quote(quote_id: str) -> dict:
    def op():
        if not quote_id or not db.delete_quote(quote_id):
            raise NotFound("Devis introuvable.", quote_id=quote_id)
        log.warning("Quote %s deleted", quote_id, extra={"quote_id": quote_id})
        return {"ok": True, "quote_id": quote_id, "message": "Devis supprimé avec succès"}

    return _run("delete_quote", "Erreur lors de la suppression", op, quote_id=quote_id)


# ═══════════════════════════════════════════════════════════════════════════════
# SIGN
# ═══════════════════════════════════════════════════════════════════════════════

def sign_quote(quote_id: str, signature_data_url: str, signer: Signer, store=None) -> dict:
    """pending → signed. Prospect signers get a deposit checkout URL back."""
    def op():
        quote = _load_quote(quote_id)
        project = db.get_project(quote.project_id)
        if not project:
            raise NotFound("Projet introuvable.", quote_id=quote_id)
        if not (signer.is_staff or (signer.user_id and signer.user_id == project["owner_id"])):
            raise Forbidden("Accès refusé.", quote_id=quote_id)
        if isinstance(quote, SignedQuote):
            raise InvalidState("Ce devis a déjà été signé.", quote_id=quote_id)
        if isinstance(quote, CancelledQuote):
            raise InvalidState("Ce devis a été annulé.", quote_id=quote_id)

        png = decode_signature(signature_data_url)
        if is_blank_signature(png):
            raise ValidationError("Signature requise.", quote_id=quote_id)

        st = store or get_store()
        signed_at = datetime.now(timezone.utc)
        signed_url = render_signed_quote(quote, png, signed_at, st,
                                         context=quote.render_context or None)

        if not db.mark_quote_signed(quote.id, signed_url, signed_at.isoformat()):
            raise InvalidState("Ce devis a déjà été signé.", quote_id=quote_id)
        log.info("Quote %s signed", quote.formatted_number,
                 extra={"quote_id": quote.id, "project_id": project["id"],
                        "quote_number": quote.formatted_number})

        try:
            db.insert_file(signed_url, f"Devis signé - {project['name']}.pdf", project["id"],
                           signer.user_id or project["owner_id"],
                           storage_provider=getattr(st, "provider", "blob"))
        except sqlite3.Error as e:
            log.warning("Signed quote not indexed in files: %s", e,
                        extra={"quote_id": quote.id})

        owner = _resolve_owner(project)
        _notify(notify_agent.send_quote_signed_to_prospect, project["owner_id"],
                project["name"], quote.id, signed_url)
        _notify(notify_agent.send_quote_signed_to_admin, quote.id, project["name"],
                owner["name"], owner["email"], signed_url)

        result = {"ok": True, "quote_id": quote.id, "signed_pdf_url": signed_url,
                  "signed_at": signed_at.isoformat(), "checkout_url": None,
                  "message": "Devis signé avec succès."}
        if signer.role == "prospect":
            try:
                result["checkout_url"] = _deposit_checkout(quote, project, signer, owner)
            except CheckoutError:
                result["checkout_error"] = DEPOSIT_ERROR
        return result

    return _run("sign_quote", "Erreur lors de la signature du devis.", op, quote_id=quote_id)


DEPOSIT_ERROR = "Le lien de paiement de l'acompte n'a pas pu être créé."


def _deposit_checkout(quote, project: dict, signer: Signer, owner: dict) -> str:
    try:
        return create_deposit_checkout(quote.id, project["id"],
                                       signer.user_id or project["owner_id"],
                                       signer.email or owner["email"])
    except CheckoutError as e:
        log.error("Deposit checkout failed: %s", e,
                  extra={"quote_id": quote.id, "project_id": project["id"]})
        raise


def request_deposit_checkout(quote_id: str, signer: Signer) -> dict:
    """Fresh deposit checkout for a signed quote (return visit, or a failed first try)."""
    def op():
        quote = _load_quote(quote_id)
        project = db.get_project(quote.project_id)
        if not project:
            raise NotFound("Projet introuvable.", quote_id=quote_id)
        if not (signer.user_id and signer.user_id == project["owner_id"]):
            raise Forbidden("Seul le client peut régler l'acompte.", quote_id=quote_id)
        if not isinstance(quote, SignedQuote):
            raise InvalidState("Le devis doit être signé avant le paiement de l'acompte.",
                               quote_id=quote_id)
        try:
            url = _deposit_checkout(quote, project, signer, _resolve_owner(project))
        except CheckoutError:
            raise DependencyFailure(DEPOSIT_ERROR, quote_id=quote_id)
        return {"ok": True, "quote_id": quote.id, "checkout_url": url}

    return _run("request_deposit_checkout", "Erreur lors de la création du paiement.",
                op, quote_id=quote_id)


# ═══════════════════════════════════════════════════════════════════════════════
# READ / UPLOAD
# ═══════════════════════════════════════════════════════════════════════════════

def get_quote(quote_id: str) -> dict:
    def op():
        row = db.get_quote_with_project(quote_id) if quote_id else None
        if not row:
            raise NotFound("Devis introuvable.", quote_id=quote_id)
        d = quote_from_row(row).to_dict()
        d["project_name"] = row.get("project_name")
        d["owner_id"] = row.get("owner_id")
        return {"ok": True, "quote": d}

    return _run("get_quote", "Erreur lors de la lecture du devis.", op, quote_id=quote_id)


def list_quotes(status: str = None) -> dict:
    def op():
        if status and status not in STATUSES:
            raise ValidationError(f"Statut inconnu : {status}")
        quotes = []
        for row in db.list_quotes(status=status):
            d = quote_from_row(row).to_dict()
            d["project_name"] = row.get("project_name")
            d["owner_email"] = row.get("owner_email")
            quotes.append(d)
        return {"ok": True, "quotes": quotes, "count": len(quotes)}

    return _run("list_quotes", "Erreur lors de la lecture des devis.", op)


def upload_quote_pdf(filename: str, data: bytes, store=None) -> dict:
    """Store an operator-supplied PDF; its URL can feed create_standalone_quote."""
    def op():
        if not data:
            raise ValidationError("Fichier manquant.")
        if len(data) > MAX_UPLOAD_BYTES:
            raise ValidationError("Fichier trop volumineux.")
        if not data.startswith(b"%PDF"):
            raise ValidationError("Seuls les fichiers PDF sont acceptés.")
        name = secure_filename(filename or "") or "devis.pdf"
        path = f"quotes/uploads/{int(time.time() * 1000)}-{name}"
        try:
            url = (store or get_store()).put(path, data, "application/pdf")
        except StorageError as e:
            raise RenderFailure(f"Stockage du fichier impossible : {e}")
        log.info("Operator upload stored: %s (%d bytes)", path, len(data))
        return {"ok": True, "url": url}

    return _run("upload_quote_pdf", "Erreur lors de l'envoi du fichier.", op)
