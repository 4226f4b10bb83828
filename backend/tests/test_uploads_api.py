from __future__ import annotations

import re
import time
from urllib.parse import parse_qs, urlparse

from app.monitoring.metrics import upload_attempts_total

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 1016


def _upload(client, content: bytes, content_type: str, name: str = "file.png", **form: str):
    return client.post(
        "/api/upload",
        files={"file": (name, content, content_type)},
        data=form,
    )


def test_rejects_unsupported_type(client) -> None:
    response = _upload(client, b"hello", "text/plain", name="notes.txt")

    assert response.status_code == 415
    assert response.json() == {"error": "Unsupported file type"}


def test_rejects_oversized_file(client) -> None:
    before = upload_attempts_total.value("ft", "too_large")
    response = _upload(client, b"\x00" * (11 * 1024 * 1024), "image/png")

    assert response.status_code == 413
    assert response.json() == {"error": "File too large"}
    assert upload_attempts_total.value("ft", "too_large") == before + 1


def test_stores_image_in_public_bucket(client, storage) -> None:
    response = _upload(client, PNG_BYTES, "image/png", bucket="ft", folder="uploads")

    assert response.status_code == 200
    body = response.json()
    assert set(body) == {"publicUrl", "path"}
    assert re.fullmatch(r"uploads/[0-9a-f-]{36}\.png", body["path"])
    assert body["publicUrl"] == f"/api/storage/ft/{body['path']}"
    assert storage.resolve("ft", body["path"]).read_bytes() == PNG_BYTES

    download = client.get(body["publicUrl"])
    assert download.status_code == 200
    assert download.content == PNG_BYTES
    assert download.headers["content-type"] == "image/png"


def test_defaults_bucket_and_folder(client) -> None:
    response = _upload(client, b"\x00\x00\x00\x18ftypmp42", "video/mp4", name="clip.mp4")

    assert response.status_code == 200
    assert response.json()["path"].startswith("uploads/")
    assert response.json()["path"].endswith(".mp4")


def test_missing_extension_is_stored_as_bin(client) -> None:
    response = _upload(client, PNG_BYTES, "image/png", name="camera-roll")

    assert response.status_code == 200
    assert response.json()["path"].endswith(".bin")


def test_rejects_unknown_bucket_and_folder(client) -> None:
    bucket = _upload(client, PNG_BYTES, "image/png", bucket="secrets")
    folder = _upload(client, PNG_BYTES, "image/png", folder="../etc")

    assert bucket.status_code == 403
    assert bucket.json() == {"error": "Bucket not allowed"}
    assert folder.status_code == 403
    assert folder.json() == {"error": "Folder not allowed"}


def test_missing_file_is_rejected(client) -> None:
    response = client.post("/api/upload", data={"bucket": "ft"})

    assert response.status_code == 400
    assert response.json() == {"error": "No file provided"}


def test_private_bucket_returns_signed_url(client) -> None:
    response = _upload(client, PNG_BYTES, "image/png", bucket="private", folder="messages")

    assert response.status_code == 200
    body = response.json()
    signed = urlparse(body["publicUrl"])
    params = parse_qs(signed.query)
    assert signed.path == f"/api/storage/private/{body['path']}"
    assert int(params["expires"][0]) > time.time()

    assert client.get(signed.path).status_code == 403
    forged = client.get(signed.path, params={"expires": params["expires"][0], "token": "0" * 64})
    assert forged.status_code == 403

    download = client.get(body["publicUrl"])
    assert download.status_code == 200
    assert download.content == PNG_BYTES


def test_expired_signature_is_rejected(client, storage) -> None:
    stored = _upload(client, PNG_BYTES, "image/png", bucket="private", folder="uploads").json()
    expired = int(time.time()) - 10
    token = storage.sign("private", stored["path"], expired)

    response = client.get(
        f"/api/storage/private/{stored['path']}", params={"expires": expired, "token": token}
    )

    assert response.status_code == 403
    assert response.json() == {"error": "Invalid or expired signature"}


def test_storage_rejects_missing_and_escaping_objects(client) -> None:
    assert client.get("/api/storage/ft/uploads/missing.png").status_code == 404
    assert client.get("/api/storage/ft/uploads/%2E%2E/%2E%2E/secret").status_code in (400, 404)
