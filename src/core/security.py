"""
Access control for the quote API.

Who may call what:
  operator   HTTP Basic (DASH_USER / DASH_PASS), or a session whose profile
             role is "staff". Issues, resends, deletes, uploads.
  signer     the logged-in owner of the quote's project (session cookie set
             by /api/auth/login). Operators may also sign, without checkout.

Abuse control: per-IP token buckets per route tier, 429 once empty
(DISABLE_RATE_LIMIT=true turns them off, tests do).
Every response gets the headers in SECURITY_HEADERS.
"""

import os
import hmac
import time
import logging
import functools
from threading import Lock

from flask import request, session, jsonify, g

from src.core import db
from src.core.secrets import get_key

log = logging.getLogger("quotes.security")

# ═══════════════════════════════════════════════════════════════════════════════
# Rate limiting
# ═══════════════════════════════════════════════════════════════════════════════

# tier → (burst, tokens regained per second)
RATE_LIMITS = {
    "default": (60, 2.0),    # 120/min
    "api":     (30, 1.0),    # 60/min
    "auth":    (5, 0.1),     # 6/min, login attempts
    "heavy":   (10, 0.2),    # 12/min, PDF rendering + signing
}


class RateLimiter:
    """Token buckets keyed by "<ip>:<tier>", kept in process memory.

    Buckets idle for more than `max_idle` seconds are dropped, at most once
    every `prune_every` seconds, from inside check().
    """

    def __init__(self, max_idle: int = 3600, prune_every: int = 300):
        self._buckets = {}   # key → (tokens, last_seen)
        self._lock = Lock()
        self.max_idle = max_idle
        self.prune_every = prune_every
        self._last_prune = time.monotonic()

    def check(self, key: str, max_tokens: int = 60, refill_rate: float = 1.0) -> bool:
        """Take one token from `key`'s bucket. False when the bucket is empty."""
        now = time.monotonic()
        with self._lock:
            if now - self._last_prune >= self.prune_every:
                self._prune_locked(now - self.max_idle)
                self._last_prune = now
            tokens, last = self._buckets.get(key, (max_tokens, now))
            tokens = min(max_tokens, tokens + (now - last) * refill_rate)
            allowed = tokens >= 1
            self._buckets[key] = (tokens - 1 if allowed else tokens, now)
        return allowed

    def _prune_locked(self, cutoff: float):
        stale = [k for k, (_, last) in self._buckets.items() if last < cutoff]
        for k in stale:
            del self._buckets[k]
        if stale:
            log.debug("Rate limiter pruned %d idle buckets", len(stale))

    def prune(self, max_idle: int = None):
        """Forget buckets untouched for max_idle seconds."""
        idle = self.max_idle if max_idle is None else max_idle
        with self._lock:
            self._prune_locked(time.monotonic() - idle)

    def __len__(self):
        return len(self._buckets)

    def reset(self):
        with self._lock:
            self._buckets.clear()
            self._last_prune = time.monotonic()


_limiter = RateLimiter()


def _rate_limit_disabled() -> bool:
    return os.environ.get("DISABLE_RATE_LIMIT", "").lower() in ("1", "true", "yes")


def rate_limit(tier: str = "default"):
    """Route decorator: 429 once the caller's bucket for `tier` is empty."""
    burst, refill = RATE_LIMITS.get(tier, RATE_LIMITS["default"])

    def decorator(f):
        @functools.wraps(f)
        def limited(*args, **kwargs):
            if not _rate_limit_disabled():
                ip = request.remote_addr or "unknown"
                if not _limiter.check(f"{ip}:{tier}", burst, refill):
                    log.warning("Rate limit hit: %s on %s (tier=%s)", ip, request.path, tier)
                    return jsonify({"ok": False, "code": "rate_limited",
                                    "error": "Trop de requêtes, réessayez dans un instant."}), 429
            return f(*args, **kwargs)
        return limited
    return decorator


# ═══════════════════════════════════════════════════════════════════════════════
# Identity
# ═══════════════════════════════════════════════════════════════════════════════

def check_basic_auth() -> bool:
    auth = request.authorization
    if not auth or auth.username is None or auth.password is None:
        return False
    user, password = get_key("dash_user"), get_key("dash_pass")
    if not password:
        return False
    return (hmac.compare_digest(auth.username, user)
            and hmac.compare_digest(auth.password, password))


def current_user():
    """Session user as {id, email, name, role}, or None."""
    if "current_user" in g:
        return g.current_user
    user = None
    uid = session.get("user_id")
    if uid:
        account = db.get_user(uid)
        if account:
            profile = db.get_profile(uid) or {}
            user = {
                "id": account["id"],
                "email": account["email"],
                "name": profile.get("full_name") or account.get("name"),
                "role": profile.get("role", "prospect"),
            }
    g.current_user = user
    return user


def is_operator() -> bool:
    if check_basic_auth():
        return True
    user = current_user()
    return bool(user and user["role"] == "staff")


def login_session(user_id: str):
    session.clear()
    session["user_id"] = user_id
    g.pop("current_user", None)


def logout_session():
    session.clear()
    g.pop("current_user", None)


def _unauthorized(message: str, status: int = 401):
    resp = jsonify({"ok": False, "error": message, "code": "unauthorized"})
    resp.status_code = status
    if status == 401:
        resp.headers["WWW-Authenticate"] = 'Basic realm="Orylis Devis"'
    return resp


def staff_required(f):
    """Operator-only endpoints (create / resend / delete / upload)."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if is_operator():
            return f(*args, **kwargs)
        if current_user():
            log.warning("Non-staff user %s denied %s %s",
                        current_user()["id"], request.method, request.path)
            return _unauthorized("Non autorisé", 403)
        return _unauthorized("Non autorisé")
    return decorated


def login_required(f):
    """Any authenticated caller: session user or operator."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if current_user() or check_basic_auth():
            return f(*args, **kwargs)
        return _unauthorized("Non authentifié.")
    return decorated


# ═══════════════════════════════════════════════════════════════════════════════
# Response headers
# ═══════════════════════════════════════════════════════════════════════════════

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


def add_security_headers(response):
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    # quote payloads carry personal data, never cache them
    response.headers.setdefault("Cache-Control", "no-store")
    return response


def init_security(app):
    app.after_request(add_security_headers)
    log.info("Security middleware on: basic auth + sessions, rate limits %s, headers",
             "disabled" if _rate_limit_disabled() else "enabled")
