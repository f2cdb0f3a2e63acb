"""
Shared pytest fixtures for the Orylis quote test suite.

Every test gets its own SQLite file and an in-memory artifact store. Outgoing
e-mails and Stripe calls never leave the process: they are captured in
`sent_emails` / `checkout_calls`.
"""
import io
import os
import sys
import base64
import tempfile

import pytest

_PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

# Resolved by src.core.paths at import time, so it must be set first.
os.environ.setdefault("QUOTES_DATA_DIR", tempfile.mkdtemp(prefix="orylis-quotes-test-"))

from src.core import db  # noqa: E402
from src.core import storage  # noqa: E402
from src.core.storage import StorageError  # noqa: E402

DASH_USER = "orylis"
DASH_PASS = "changeme"
PROSPECT_PASSWORD = "motdepasse42"
_HASH_CACHE = {}


class MemoryArtifactStore:
    """put/get contract of the real stores, kept in a dict."""
    provider = "memory"

    def __init__(self):
        self.objects = {}

    def put(self, path, data, content_type="application/pdf"):
        if path in self.objects:
            raise StorageError(f"Artifact already exists: {path}")
        self.objects[path] = data
        return f"https://blob.test/{path}"

    def get(self, url):
        try:
            return self.objects[url.replace("https://blob.test/", "", 1)]
        except KeyError:
            raise StorageError(f"Artifact not found: {url}")


class FailingArtifactStore:
    provider = "memory"

    def put(self, path, data, content_type="application/pdf"):
        raise StorageError("BLOB_READ_WRITE_TOKEN is not set")

    def get(self, url):
        raise StorageError("nothing stored")


# ── Per-test isolation ────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def temp_data_dir(tmp_path, monkeypatch):
    """Fresh DB + env for every test."""
    data = str(tmp_path / "data")
    os.makedirs(data, exist_ok=True)
    monkeypatch.setattr(db, "DB_PATH", os.path.join(data, "quotes.db"))
    db.init_db()

    monkeypatch.setenv("DASH_USER", DASH_USER)
    monkeypatch.setenv("DASH_PASS", DASH_PASS)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("APP_URL", "https://app.test")
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("DISABLE_RATE_LIMIT", "true")
    monkeypatch.setenv("QUOTE_TIMEZONE", "Europe/Paris")
    monkeypatch.delenv("ARTIFACT_STORE", raising=False)
    monkeypatch.delenv("QUOTE_LOGO_URL", raising=False)
    return data


@pytest.fixture(autouse=True)
def no_remote_logo(monkeypatch):
    """Renders use the local asset or the wordmark, never the network."""
    from src.forms import quote_generator
    monkeypatch.setattr(quote_generator, "_fetch_remote_logo", lambda url: None)


@pytest.fixture(autouse=True)
def memory_store():
    store = MemoryArtifactStore()
    storage.set_store(store)
    yield store
    storage.set_store(None)


@pytest.fixture
def failing_store():
    store = FailingArtifactStore()
    storage.set_store(store)
    yield store
    storage.set_store(None)


@pytest.fixture(autouse=True)
def sent_emails(monkeypatch):
    """Captured e-mail API payloads."""
    from src.agents import notify_agent
    outbox = []

    def fake_post(payload):
        outbox.append(payload)
        return f"msg_{len(outbox)}"

    monkeypatch.setattr(notify_agent, "_post_email", fake_post)
    monkeypatch.setattr(notify_agent, "RETRY_DELAYS", (0, 0))
    return outbox


@pytest.fixture(autouse=True)
def checkout_calls(monkeypatch):
    """Captured deposit checkout requests; returns a fake hosted URL."""
    from src.core import quote_ledger
    calls = []

    def fake_checkout(quote_id, project_id, user_id, email=None):
        calls.append({"quote_id": quote_id, "project_id": project_id,
                      "user_id": user_id, "email": email})
        return f"https://checkout.stripe.test/c/{quote_id}"

    monkeypatch.setattr(quote_ledger, "create_deposit_checkout", fake_checkout)
    return calls


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    from src.core import security
    security._limiter.reset()


# ── Seed helpers ──────────────────────────────────────────────────────────────

def _password_hash(password):
    if password not in _HASH_CACHE:
        from src.core.accounts import hash_password
        _HASH_CACHE[password] = hash_password(password)
    return _HASH_CACHE[password]


def make_account(email, name="Alice Martin", company=None, role="prospect",
                 password=PROSPECT_PASSWORD, phone=None):
    user_id = db.new_id()
    db.insert_account(user_id, email, name, company, _password_hash(password), role=role)
    if phone:
        with db.get_db() as conn:
            conn.execute("UPDATE profiles SET phone=? WHERE id=?", (phone, user_id))
    return user_id


@pytest.fixture
def prospect():
    """Registered prospect account: {id, email, password}."""
    uid = make_account("a@b.com", "Alice Martin", company="Boulangerie Martin",
                       phone="06 12 34 56 78")
    return {"id": uid, "email": "a@b.com", "password": PROSPECT_PASSWORD}


@pytest.fixture
def staff_user():
    uid = make_account("equipe@orylis.fr", "Équipe Orylis", role="staff")
    return {"id": uid, "email": "equipe@orylis.fr", "password": PROSPECT_PASSWORD}


@pytest.fixture
def project(prospect):
    return db.insert_project(prospect["id"], "Site vitrine boulangerie")


@pytest.fixture
def make_project():
    def _make(email="client@example.com", name="Projet test", full_name="Client Test"):
        owner = db.get_user_by_email(email)
        uid = owner["id"] if owner else make_account(email, full_name)
        return db.insert_project(uid, name)
    return _make


# ── Signatures ────────────────────────────────────────────────────────────────

def _png_data_url(img):
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode()


@pytest.fixture
def signature_data_url():
    """A drawn stroke on a transparent canvas, like the browser pad produces."""
    from PIL import Image, ImageDraw
    img = Image.new("RGBA", (400, 150), (0, 0, 0, 0))
    draw = ImageDraw.Draw(img)
    draw.line([(20, 120), (120, 30), (220, 110), (380, 40)], fill=(0, 0, 0, 255), width=4)
    return _png_data_url(img)


@pytest.fixture
def blank_signature_data_url():
    from PIL import Image
    return _png_data_url(Image.new("RGBA", (400, 150), (0, 0, 0, 0)))


# ── Flask test client ─────────────────────────────────────────────────────────

def _basic_auth_header(user=DASH_USER, pw=DASH_PASS):
    creds = base64.b64encode(f"{user}:{pw}".encode()).decode()
    return {"Authorization": f"Basic {creds}"}


class AuthenticatedClient:
    """Wraps Flask test client to add Basic Auth headers to every request."""
    def __init__(self, client, headers):
        self._client = client
        self._headers = headers

    def get(self, *args, **kwargs):
        kwargs.setdefault("headers", {}).update(self._headers)
        return self._client.get(*args, **kwargs)

    def post(self, *args, **kwargs):
        kwargs.setdefault("headers", {}).update(self._headers)
        return self._client.post(*args, **kwargs)

    def delete(self, *args, **kwargs):
        kwargs.setdefault("headers", {}).update(self._headers)
        return self._client.delete(*args, **kwargs)


@pytest.fixture
def app(memory_store):
    from app import create_app
    application = create_app(store=memory_store)
    application.config["TESTING"] = True
    return application


@pytest.fixture
def client(app):
    """Operator client (HTTP Basic Auth on every request)."""
    return AuthenticatedClient(app.test_client(), _basic_auth_header())


@pytest.fixture
def anon_client(app):
    """Unauthenticated test client."""
    return app.test_client()


@pytest.fixture
def login(app):
    """login(email, password) → test client holding that user's session."""
    clients = []

    def _login(email, password=PROSPECT_PASSWORD):
        c = app.test_client()
        resp = c.post("/api/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.get_json()
        clients.append(c)
        return c

    return _login
