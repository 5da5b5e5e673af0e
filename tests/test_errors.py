"""
tests/test_errors.py
"""
from __future__ import annotations

import io

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from photoarchive.archive import ObjectStore, StorageError, app


# ───────────────────────── helpers ──────────────────────────────────
def _client_error(code: str, op: str = "GetObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


# ─────────────────────────■  error pages  ■──────────────────────────

def test_404_custom_page(client):
    """
    Any unknown URL yields the themed “Page not found” template.
    """
    resp = client.get("/this/route/does/not/exist")
    assert resp.status_code == 404
    # sanity-check that we really rendered *our* template, not Werkzeug’s
    assert b"Page not found" in resp.data
    assert b"photoarchive" in resp.data


def test_500_handler_renders_friendly_page(client, monkeypatch):
    """
    Temporarily replace ``index`` with a view that crashes, but disable
    exception propagation so the global 500-handler can render the page.
    """
    def _boom():
        raise RuntimeError("kaboom!")

    # ➊ monkey-patch the failing view
    monkeypatch.setitem(app.view_functions, "index", _boom)

    # ➋ turn *off* propagation just for this test
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = client.get("/")                 # handled by our 500-handler
    assert resp.status_code == 500
    assert b"Internal Server Error" in resp.data


def test_unconfigured_storage_is_502(client, monkeypatch):
    monkeypatch.setitem(app.extensions, "object_store", None)
    for key in ("S3_ENDPOINT", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr("photoarchive.archive._read_env_file", lambda: {})

    resp = client.get("/blob/2022/a.jpg")
    assert resp.status_code == 502
    assert b"not configured" in resp.data


# ─────────────────────────■  ObjectStore  ■──────────────────────────
class _FakeS3:
    """Records calls; raises *boom* from every operation when given."""

    def __init__(self, boom: Exception | None = None, objects: dict | None = None):
        self.boom = boom
        self.objects = objects or {}
        self.calls: list[tuple] = []

    def upload_fileobj(self, stream, bucket, key, ExtraArgs=None):
        self.calls.append(("upload_fileobj", bucket, key, ExtraArgs))
        if self.boom:
            raise self.boom
        self.objects[key] = stream.read()

    def get_object(self, Bucket, Key):
        self.calls.append(("get_object", Bucket, Key))
        if self.boom:
            raise self.boom
        if Key not in self.objects:
            raise _client_error("NoSuchKey")
        data = self.objects[Key]
        return {"Body": io.BytesIO(data), "ContentLength": len(data)}

    def delete_object(self, Bucket, Key):
        self.calls.append(("delete_object", Bucket, Key))
        if self.boom:
            raise self.boom
        self.objects.pop(Key, None)


def test_object_store_put_passes_content_type():
    s3 = _FakeS3()
    ObjectStore(s3, "download").put("2022/a.jpg", io.BytesIO(b"x"), "image/jpeg")
    assert s3.calls == [
        ("upload_fileobj", "download", "2022/a.jpg", {"ContentType": "image/jpeg"})
    ]
    assert s3.objects["2022/a.jpg"] == b"x"


def test_object_store_open_returns_body_and_length():
    s3 = _FakeS3(objects={"k": b"abc"})
    body, length = ObjectStore(s3, "download").open("k")
    assert body.read() == b"abc" and length == 3
    assert s3.calls == [("get_object", "download", "k")]


def test_object_store_open_missing_key():
    assert ObjectStore(_FakeS3(), "download").open("k") is None


def test_object_store_delete():
    s3 = _FakeS3(objects={"k": b"abc"})
    ObjectStore(s3, "download").delete("k")
    assert s3.objects == {}


@pytest.mark.parametrize("method, args, boom", [
    ("open", ("k",), _client_error("AccessDenied")),
    ("open", ("k",), EndpointConnectionError(endpoint_url="http://nginx:9000")),
    ("put", ("k", io.BytesIO(b""), "image/png"), _client_error("InternalError", "PutObject")),
    ("delete", ("k",), _client_error("AccessDenied", "DeleteObject")),
])
def test_object_store_wraps_failures(method, args, boom):
    with pytest.raises(StorageError):
        getattr(ObjectStore(_FakeS3(boom), "download"), method)(*args)


def test_object_store_built_from_environment(monkeypatch):
    """Configured credentials build a client bound to the chosen bucket."""
    from photoarchive import archive

    built: dict = {}

    def _fake_client(cfg):
        built.update(cfg)
        return _FakeS3()

    monkeypatch.setitem(app.extensions, "object_store", None)
    monkeypatch.setattr(archive, "_read_env_file", lambda: {})
    monkeypatch.setattr(archive, "_s3_client", _fake_client)
    monkeypatch.setenv("S3_ENDPOINT", "http://nginx:9000")
    monkeypatch.setenv("S3_ACCESS_KEY_ID", "key")
    monkeypatch.setenv("S3_SECRET_ACCESS_KEY", "secret")
    monkeypatch.setenv("S3_BUCKET", "photos")

    store = archive.object_store()
    assert store.bucket == "photos"
    assert built["S3_ENDPOINT"] == "http://nginx:9000"
    assert archive.object_store() is store
