"""
Artifact storage for rendered quote PDFs.

Two backends with the same put/get contract:
  LocalArtifactStore — files under DATA_DIR/artifacts, served by /files/<path>
  BlobArtifactStore  — public blob storage over HTTP (BLOB_READ_WRITE_TOKEN)

Artifacts are immutable: a put on an existing path is refused.
"""

import os
import logging
import secrets as _secrets
import time
from urllib.parse import quote as _urlquote

import requests

from src.core.paths import ARTIFACTS_DIR

log = logging.getLogger("quotes.storage")

DEFAULT_BLOB_API_URL = "https://blob.vercel-storage.com"


class StorageError(Exception):
    """Artifact could not be written or read."""


def artifact_path(prefix: str, key: str, ext: str = "pdf") -> str:
    """quotes/<prefix>-<key>-<ms timestamp>-<suffix>.<ext>

    The millisecond timestamp keeps renders of the same quote apart; the random
    suffix covers two renders landing in the same millisecond.
    """
    ms = int(time.time() * 1000)
    return f"quotes/{prefix}-{key}-{ms}-{_secrets.token_hex(3)}.{ext}"


def _safe_relpath(path: str) -> str:
    norm = os.path.normpath(path).replace("\\", "/").lstrip("/")
    if norm.startswith("..") or "/../" in f"/{norm}/":
        raise StorageError(f"Invalid artifact path: {path}")
    return norm


class LocalArtifactStore:
    provider = "local"

    def __init__(self, root_dir: str = None, base_url: str = None):
        self.root_dir = root_dir or ARTIFACTS_DIR
        self.base_url = (base_url if base_url is not None
                         else os.environ.get("APP_URL", "http://localhost:5000")).rstrip("/")

    def _full_path(self, path: str) -> str:
        return os.path.join(self.root_dir, _safe_relpath(path))

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/files/{_urlquote(_safe_relpath(path))}"

    def put(self, path: str, data: bytes, content_type: str = "application/pdf") -> str:
        full = self._full_path(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        try:
            with open(full, "xb") as f:
                f.write(data)
        except FileExistsError:
            raise StorageError(f"Artifact already exists: {path}")
        except OSError as e:
            raise StorageError(f"Local artifact write failed: {e}") from e
        log.info("Stored %s (%d bytes, %s)", path, len(data), content_type)
        return self.url_for(path)

    def open_path(self, path: str) -> str:
        """Filesystem path for a stored artifact (used by the /files route)."""
        full = self._full_path(path)
        if not os.path.isfile(full):
            raise StorageError(f"Artifact not found: {path}")
        return full

    def get(self, url_or_path: str) -> bytes:
        path = url_or_path
        marker = f"{self.base_url}/files/"
        if path.startswith(marker):
            path = path[len(marker):]
        elif path.startswith(("http://", "https://")):
            # operator-supplied document hosted elsewhere
            return fetch_url(path)
        with open(self.open_path(path), "rb") as f:
            return f.read()


class BlobArtifactStore:
    provider = "blob"

    def __init__(self, token: str = None, api_url: str = None, timeout: int = 30):
        self.token = token if token is not None else os.environ.get("BLOB_READ_WRITE_TOKEN", "")
        self.api_url = (api_url or os.environ.get("BLOB_API_URL", DEFAULT_BLOB_API_URL)).rstrip("/")
        self.timeout = timeout

    def put(self, path: str, data: bytes, content_type: str = "application/pdf") -> str:
        if not self.token:
            raise StorageError(
                "BLOB_READ_WRITE_TOKEN is not set — configure it in the deployment "
                "environment before generating quotes")
        try:
            resp = requests.put(
                f"{self.api_url}/{_safe_relpath(path)}",
                data=data,
                headers={
                    "authorization": f"Bearer {self.token}",
                    "x-content-type": content_type,
                    "x-add-random-suffix": "0",
                    "access": "public",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise StorageError(f"Blob upload failed: {e}") from e
        if resp.status_code >= 300:
            raise StorageError(f"Blob upload failed: HTTP {resp.status_code} {resp.text[:200]}")
        try:
            url = resp.json()["url"]
        except (ValueError, KeyError) as e:
            raise StorageError("Blob upload returned no URL") from e
        log.info("Uploaded %s (%d bytes) → %s", path, len(data), url)
        return url

    def get(self, url: str) -> bytes:
        return fetch_url(url, self.timeout)


def fetch_url(url: str, timeout: int = 30) -> bytes:
    """GET a public artifact URL. Raises StorageError."""
    try:
        resp = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise StorageError(f"Artifact fetch failed: {e}") from e
    if resp.status_code != 200:
        raise StorageError(f"Artifact fetch failed: HTTP {resp.status_code}")
    return resp.content


_store = None


def get_store():
    """Process-wide artifact store, chosen by ARTIFACT_STORE (local|blob)."""
    global _store
    if _store is None:
        kind = os.environ.get("ARTIFACT_STORE", "local").lower()
        _store = BlobArtifactStore() if kind == "blob" else LocalArtifactStore()
        log.info("Artifact store: %s", _store.provider)
    return _store


def set_store(store):
    """Swap the process-wide store (tests, app factory)."""
    global _store
    _store = store
    return store
