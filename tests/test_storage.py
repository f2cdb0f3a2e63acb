"""Tests for the artifact stores (local files + blob over HTTP)."""

import re

import pytest
import requests

from src.core import storage
from src.core.storage import (
    BlobArtifactStore, LocalArtifactStore, StorageError, artifact_path, get_store,
)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text="", content=b""):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.content = content

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class TestArtifactPath:
    def test_shape(self):
        path = artifact_path("quote", "000042")
        assert re.match(r"^quotes/quote-000042-\d{13}-[0-9a-f]{6}\.pdf$", path)

    def test_same_key_twice_gives_distinct_paths(self):
        assert artifact_path("quote", "000042") != artifact_path("quote", "000042")


class TestLocalStore:
    def test_put_then_get(self, tmp_path):
        store = LocalArtifactStore(root_dir=str(tmp_path), base_url="https://app.test")
        url = store.put("quotes/quote-1.pdf", b"%PDF-1.4 test")
        assert url == "https://app.test/files/quotes/quote-1.pdf"
        assert store.get(url) == b"%PDF-1.4 test"
        assert store.get("quotes/quote-1.pdf") == b"%PDF-1.4 test"

    def test_never_overwrites(self, tmp_path):
        store = LocalArtifactStore(root_dir=str(tmp_path), base_url="https://app.test")
        store.put("quotes/a.pdf", b"first")
        with pytest.raises(StorageError):
            store.put("quotes/a.pdf", b"second")
        assert store.get("quotes/a.pdf") == b"first"

    def test_rejects_traversal(self, tmp_path):
        store = LocalArtifactStore(root_dir=str(tmp_path), base_url="https://app.test")
        with pytest.raises(StorageError):
            store.put("../outside.pdf", b"x")
        with pytest.raises(StorageError):
            store.open_path("quotes/../../etc/passwd")

    def test_missing_artifact(self, tmp_path):
        store = LocalArtifactStore(root_dir=str(tmp_path), base_url="https://app.test")
        with pytest.raises(StorageError):
            store.open_path("quotes/none.pdf")

    def test_foreign_url_fetched_over_http(self, tmp_path, monkeypatch):
        seen = {}

        def fake_get(url, timeout=None):
            seen["url"] = url
            return FakeResponse(200, content=b"%PDF-operator")

        monkeypatch.setattr(storage.requests, "get", fake_get)
        store = LocalArtifactStore(root_dir=str(tmp_path), base_url="https://app.test")
        assert store.get("https://cdn.example.fr/devis.pdf") == b"%PDF-operator"
        assert seen["url"] == "https://cdn.example.fr/devis.pdf"

    def test_foreign_url_missing(self, tmp_path, monkeypatch):
        monkeypatch.setattr(storage.requests, "get", lambda *a, **k: FakeResponse(404))
        store = LocalArtifactStore(root_dir=str(tmp_path), base_url="https://app.test")
        with pytest.raises(StorageError, match="HTTP 404"):
            store.get("https://cdn.example.fr/gone.pdf")


class TestBlobStore:
    def test_requires_token(self):
        with pytest.raises(StorageError, match="BLOB_READ_WRITE_TOKEN"):
            BlobArtifactStore(token="").put("quotes/a.pdf", b"x")

    def test_put_returns_public_url(self, monkeypatch):
        seen = {}

        def fake_put(url, data=None, headers=None, timeout=None):
            seen.update(url=url, data=data, headers=headers)
            return FakeResponse(200, {"url": "https://public.blob.test/quotes/a.pdf"})

        monkeypatch.setattr(storage.requests, "put", fake_put)
        store = BlobArtifactStore(token="vercel_blob_rw_x", api_url="https://blob.api.test")
        url = store.put("quotes/a.pdf", b"%PDF", "application/pdf")

        assert url == "https://public.blob.test/quotes/a.pdf"
        assert seen["url"] == "https://blob.api.test/quotes/a.pdf"
        assert seen["headers"]["authorization"] == "Bearer vercel_blob_rw_x"
        assert seen["headers"]["x-content-type"] == "application/pdf"

    def test_http_error(self, monkeypatch):
        monkeypatch.setattr(storage.requests, "put",
                            lambda *a, **k: FakeResponse(500, text="boom"))
        with pytest.raises(StorageError, match="HTTP 500"):
            BlobArtifactStore(token="t").put("quotes/a.pdf", b"x")

    def test_network_error(self, monkeypatch):
        def boom(*a, **k):
            raise requests.ConnectionError("unreachable")
        monkeypatch.setattr(storage.requests, "put", boom)
        with pytest.raises(StorageError):
            BlobArtifactStore(token="t").put("quotes/a.pdf", b"x")

    def test_get(self, monkeypatch):
        monkeypatch.setattr(storage.requests, "get",
                            lambda *a, **k: FakeResponse(200, content=b"%PDF-data"))
        assert BlobArtifactStore(token="t").get("https://public.blob.test/a.pdf") == b"%PDF-data"


class TestGetStore:
    def test_default_is_local(self):
        storage.set_store(None)
        assert get_store().provider == "local"

    def test_blob_from_env(self, monkeypatch):
        storage.set_store(None)
        monkeypatch.setenv("ARTIFACT_STORE", "blob")
        assert isinstance(get_store(), BlobArtifactStore)
