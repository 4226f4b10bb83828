from __future__ import annotations

import asyncio
import re

import httpx
import pytest

from app.main import app
from connecthub.uploads import (
    FilePayload,
    UploadAborted,
    UploadError,
    UploadValidationError,
    is_transient_upload_error,
    upload_cancelable,
    upload_to_supabase,
)

PNG = FilePayload(name="photo.png", content_type="image/png", content=b"\x89PNG" + b"\x00" * 300_000)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://testserver")


def _stored(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"publicUrl": "http://cdn/ft/uploads/x.png", "path": "uploads/x.png"})


@pytest.mark.anyio("asyncio")
async def test_validation_rejects_before_any_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return _stored(request)

    async with _client(handler) as http:
        with pytest.raises(UploadValidationError) as too_big:
            await upload_to_supabase(
                http, FilePayload("big.png", "image/png", b"0" * (11 * 1024 * 1024))
            )
        with pytest.raises(UploadValidationError) as wrong_type:
            upload_cancelable(http, FilePayload("notes.txt", "text/plain", b"hello"))

    assert too_big.value.status_code == 413
    assert str(too_big.value) == "File size exceeds 10MB limit"
    assert wrong_type.value.status_code == 415
    assert calls == []


@pytest.mark.anyio("asyncio")
async def test_successful_upload_reports_monotonic_progress() -> None:
    seen_form: dict[str, bytes] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        body = request.content
        seen_form["body"] = body
        seen_form["length"] = request.headers["Content-Length"].encode()
        return _stored(request)

    progress: list[int] = []
    async with _client(handler) as http:
        result = await upload_to_supabase(http, PNG, "ft", "products", progress.append)

    assert result.as_dict() == {"publicUrl": "http://cdn/ft/uploads/x.png", "path": "uploads/x.png"}
    assert progress[0] == 0
    assert progress[-1] == 100
    assert progress == sorted(set(progress))
    assert all(value <= 99 for value in progress[:-1])
    assert len(progress) > 3
    assert int(seen_form["length"]) == len(seen_form["body"])
    assert b'name="folder"' in seen_form["body"]
    assert b"products" in seen_form["body"]


@pytest.mark.anyio("asyncio")
async def test_transient_failure_is_retried_once() -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise httpx.ConnectError("connection reset")
        return _stored(request)

    progress: list[int] = []
    async with _client(handler) as http:
        result = await upload_to_supabase(http, PNG, on_progress=progress.append)

    assert attempts == 2
    assert result.path == "uploads/x.png"
    assert progress == sorted(set(progress))
    assert progress[-1] == 100


@pytest.mark.anyio("asyncio")
async def test_second_transient_failure_propagates() -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        return httpx.Response(503, text="unavailable")

    async with _client(handler) as http:
        with pytest.raises(UploadError) as excinfo:
            await upload_to_supabase(http, PNG)

    assert attempts == 2
    assert excinfo.value.status_code == 503


@pytest.mark.anyio("asyncio")
async def test_client_errors_are_not_retried() -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        return httpx.Response(403, json={"error": "Bucket not allowed"})

    async with _client(handler) as http:
        with pytest.raises(UploadError) as excinfo:
            await upload_to_supabase(http, PNG, bucket="secret")

    assert attempts == 1
    assert excinfo.value.status_code == 403
    assert "Upload failed: 403" in str(excinfo.value)


@pytest.mark.anyio("asyncio")
async def test_error_body_with_success_status_is_an_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error": "quota exceeded"})

    async with _client(handler) as http:
        with pytest.raises(UploadError, match="quota exceeded"):
            await upload_cancelable(http, PNG)


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize("body", [["uploads/x.png"], {"publicUrl": "http://cdn/x.png"}, {"path": 7}])
async def test_malformed_success_body_is_an_upload_error(body) -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        return httpx.Response(200, json=body)

    async with _client(handler) as http:
        with pytest.raises(UploadError) as excinfo:
            await upload_to_supabase(http, PNG)

    assert str(excinfo.value) == "Upload failed: invalid response body"
    assert excinfo.value.status_code == 200
    assert attempts == 1


@pytest.mark.anyio("asyncio")
async def test_cancel_aborts_in_flight_upload() -> None:
    started = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        started.set()
        await asyncio.Event().wait()
        return _stored(request)  # pragma: no cover

    async with _client(handler) as http:
        handle = upload_cancelable(http, PNG)
        await asyncio.wait_for(started.wait(), timeout=1.0)
        handle.cancel()
        with pytest.raises(UploadAborted, match="Upload aborted"):
            await handle

    assert handle.done


@pytest.mark.anyio("asyncio")
async def test_cancel_after_completion_is_a_no_op() -> None:
    async with _client(_stored) as http:
        handle = upload_cancelable(http, PNG)
        result = await handle
        handle.cancel()
        assert await handle.result() == result


def test_transient_classification() -> None:
    assert is_transient_upload_error(UploadError("Network error: connection reset"))
    assert is_transient_upload_error(UploadError("Network error: request timed out (ReadTimeout)"))
    assert is_transient_upload_error(UploadError("Upload failed: 502 bad gateway"))
    assert is_transient_upload_error(UploadAborted())
    assert not is_transient_upload_error(UploadError("Upload failed: 413 File too large"))
    assert not is_transient_upload_error(UploadValidationError("Unsupported file type", status_code=415))


def test_file_payload_extension_falls_back_to_bin() -> None:
    assert FilePayload("clip.mp4", "video/mp4", b"").extension == "mp4"
    assert FilePayload("README", "image/png", b"").extension == "bin"
    assert FilePayload(".hidden", "image/png", b"").extension == "bin"


@pytest.mark.anyio("asyncio")
async def test_orchestrator_against_upload_endpoint(client) -> None:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        result = await upload_to_supabase(
            http, FilePayload("photo.png", "image/png", b"\x89PNG" + b"\x01" * 1024)
        )

    assert re.fullmatch(r"uploads/[0-9a-f-]{36}\.png", result.path)
    assert result.public_url.endswith(result.path)
