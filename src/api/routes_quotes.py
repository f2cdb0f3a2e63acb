# Quote Routes
# Operator endpoints under /api/admin/quotes, signer endpoints under /api/quotes,
# local artifact serving under /files. Registered by app.create_app().

import time
import logging

from flask import Blueprint, request, jsonify, send_file, g, abort

from src.core import db
from src.core import quote_ledger as ledger
from src.core.accounts import verify_password
from src.core.errors import QuoteError
from src.core.secrets import validate_all
from src.core.security import (
    rate_limit, staff_required, login_required, is_operator, current_user,
    login_session, logout_session,
)
from src.core.storage import StorageError, get_store

log = logging.getLogger("quotes.api")

bp = Blueprint("quotes", __name__)

_STATUS_BY_CODE = {cls.code: cls.status for cls in (
    ledger.NotFound, ledger.Conflict, ledger.ValidationError, ledger.InvalidState,
    ledger.Forbidden, ledger.RenderFailure, ledger.DependencyFailure, QuoteError)}


def _respond(result: dict, ok_status: int = 200):
    if result.get("ok"):
        return jsonify(result), ok_status
    return jsonify(result), _STATUS_BY_CODE.get(result.get("code"), 500)


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _signer() -> ledger.Signer:
    if is_operator():
        user = current_user()
        return ledger.Signer(user_id=user["id"] if user else None, role="staff",
                             email=user["email"] if user else None)
    user = current_user()
    return ledger.Signer(user_id=user["id"], role=user["role"], email=user["email"])


# ═══════════════════════════════════════════════════════════════════════
# Request logging
# ═══════════════════════════════════════════════════════════════════════

@bp.before_app_request
def _start_timer():
    g.t0 = time.time()


@bp.after_app_request
def _log_request(response):
    if request.path.startswith("/static"):
        return response
    duration = int((time.time() - g.get("t0", time.time())) * 1000)
    user = g.get("current_user")
    log.info("%s %s → %d (%dms)", request.method, request.path, response.status_code, duration,
             extra={"route": request.path, "method": request.method,
                    "status": response.status_code, "duration_ms": duration,
                    "user": user["id"] if user else None})
    return response


# ═══════════════════════════════════════════════════════════════════════
# Operator: /api/admin/quotes
# ═══════════════════════════════════════════════════════════════════════

@bp.route("/api/admin/quotes", methods=["POST"])
@staff_required
@rate_limit("heavy")
def api_create_quote():
    """Issue the quote of an existing project."""
    result = ledger.create_quote_for_project(_body().get("project_id"))
    return _respond(result, 200 if result.get("resent") else 201)


@bp.route("/api/admin/quotes/standalone", methods=["POST"])
@staff_required
@rate_limit("heavy")
def api_create_standalone_quote():
    """Quote for a prospect without account/project yet."""
    data = _body()
    result = ledger.create_standalone_quote(
        full_name=data.get("full_name"),
        email=data.get("email"),
        project_name=data.get("project_name"),
        company=data.get("company"),
        amount=data.get("amount"),
        services=data.get("services"),
        delay=data.get("delay"),
        pdf_url=data.get("pdf_url"),
    )
    return _respond(result, 201)


@bp.route("/api/admin/quotes/upload", methods=["POST"])
@staff_required
@rate_limit("api")
def api_upload_quote_pdf():
    f = request.files.get("file")
    if f is None:
        return jsonify({"ok": False, "error": "Fichier manquant.", "code": "validation_error"}), 400
    return _respond(ledger.upload_quote_pdf(f.filename, f.read()), 201)


@bp.route("/api/admin/quotes/<quote_id>/resend", methods=["POST"])
@staff_required
@rate_limit("api")
def api_resend_quote(quote_id):
    return _respond(ledger.resend_quote(quote_id))


@bp.route("/api/admin/quotes/<quote_id>", methods=["DELETE"])
@staff_required
def api_delete_quote(quote_id):
    return _respond(ledger.delete_quote(quote_id))


@bp.route("/api/admin/quotes", methods=["GET"])
@staff_required
def api_list_quotes():
    return _respond(ledger.list_quotes(status=request.args.get("status") or None))


# ═══════════════════════════════════════════════════════════════════════
# Signer: /api/quotes
# ═══════════════════════════════════════════════════════════════════════

@bp.route("/api/quotes/<quote_id>", methods=["GET"])
@login_required
def api_get_quote(quote_id):
    result = ledger.get_quote(quote_id)
    if result.get("ok") and not is_operator():
        if result["quote"]["owner_id"] != current_user()["id"]:
            return jsonify({"ok": False, "error": "Accès refusé.", "code": "forbidden"}), 403
    return _respond(result)


@bp.route("/api/quotes/<quote_id>/sign", methods=["POST"])
@login_required
@rate_limit("heavy")
def api_sign_quote(quote_id):
    """Sign with the drawn signature. Prospects get a deposit checkout_url back."""
    result = ledger.sign_quote(quote_id, _body().get("signature_data_url"), _signer())
    return _respond(result)


@bp.route("/api/quotes/<quote_id>/deposit", methods=["POST"])
@login_required
@rate_limit("api")
def api_quote_deposit(quote_id):
    """New deposit checkout for an already signed quote (owner only)."""
    return _respond(ledger.request_deposit_checkout(quote_id, _signer()))


# ═══════════════════════════════════════════════════════════════════════
# Session
# ═══════════════════════════════════════════════════════════════════════

@bp.route("/api/auth/login", methods=["POST"])
@rate_limit("auth")
def api_login():
    data = _body()
    user = db.get_user_by_email((data.get("email") or "").strip())
    pw_hash = db.get_password_hash(user["id"]) if user else None
    if not pw_hash or not verify_password(data.get("password") or "", pw_hash):
        return jsonify({"ok": False, "error": "Identifiants invalides.", "code": "unauthorized"}), 401
    login_session(user["id"])
    log.info("Login: %s", user["id"], extra={"user": user["id"]})
    return jsonify({"ok": True, "user_id": user["id"]})


@bp.route("/api/auth/logout", methods=["POST"])
def api_logout():
    logout_session()
    return jsonify({"ok": True})


# ═══════════════════════════════════════════════════════════════════════
# Artifacts + health
# ═══════════════════════════════════════════════════════════════════════

@bp.route("/files/<path:path>")
def serve_artifact(path):
    """Local artifact store only; blob artifacts are served by the provider."""
    store = get_store()
    if store.provider != "local":
        abort(404)
    try:
        full = store.open_path(path)
    except StorageError:
        abort(404)
    return send_file(full, mimetype="application/pdf", download_name=path.rsplit("/", 1)[-1])


@bp.route("/api/health")
def api_health():
    report = validate_all()
    stats = db.get_db_stats()
    return jsonify({
        "ok": True,
        "store": get_store().provider,
        "db": {k: v for k, v in stats.items() if k != "db_path"},
        "secrets": {"set": report["set"], "total": report["total"],
                    "warnings": len(report["warnings"])},
    })
