"""Tests for the HTTP client error mapping and the typed API adapter."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable

import httpx
import pytest

from intrascribe_client.api import IntrascribeApi
from intrascribe_client.config import HttpClientConfig
from intrascribe_client.errors import (
    ApiStatusError,
    AuthenticationError,
    NetworkError,
    ResponseParsingError,
)
from intrascribe_client.http import IntrascribeHttpClient
from intrascribe_client.models import Accepted, Deferred, Immediate, TaskStatus

Handler = Callable[[httpx.Request], httpx.Response]


def _client(handler: Handler, *, token: str | None = "jwt") -> IntrascribeHttpClient:
    return IntrascribeHttpClient(
        HttpClientConfig(),
        token_provider=lambda: token,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_get_task_parses_status_and_sends_bearer_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200, json={"task_id": "t-1", "status": "processing", "progress": {"percent": 40}}
        )

    http = _client(handler)
    api = IntrascribeApi(http)

    handle = await api.get_task("t-1")

    assert handle.status is TaskStatus.PROCESSING
    assert handle.progress == {"percent": 40}
    assert seen[0].url.path == "/api/v2/tasks/t-1"
    assert seen[0].headers["Authorization"] == "Bearer jwt"
    await http.close()


@pytest.mark.asyncio
async def test_unknown_task_status_is_tolerated() -> None:
    http = _client(lambda request: httpx.Response(200, json={"status": "queued-remote"}))

    handle = await IntrascribeApi(http).get_task("t-1")

    assert handle.status is TaskStatus.UNKNOWN
    assert handle.raw_status == "queued-remote"
    await http.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [401, 403])
async def test_auth_status_codes_raise_authentication_error(status_code: int) -> None:
    http = _client(
        lambda request: httpx.Response(status_code, json={"detail": "token expired"})
    )

    with pytest.raises(AuthenticationError) as exc_info:
        await http.get_json("/v2/tasks/t-1")

    assert exc_info.value.status_code == status_code
    assert str(exc_info.value) == f"HTTP {status_code}: token expired"
    await http.close()


@pytest.mark.asyncio
async def test_server_errors_raise_api_status_error() -> None:
    http = _client(
        lambda request: httpx.Response(500, json={"error": {"message": "database down"}})
    )

    with pytest.raises(ApiStatusError) as exc_info:
        await http.get_json("/v2/tasks/t-1")

    assert exc_info.value.status_code == 500
    assert "database down" in str(exc_info.value)
    await http.close()


@pytest.mark.asyncio
async def test_transport_errors_raise_network_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    http = _client(handler)

    with pytest.raises(NetworkError):
        await http.get_json("/v2/tasks/t-1")
    await http.close()


@pytest.mark.asyncio
async def test_invalid_json_raises_parsing_error() -> None:
    http = _client(lambda request: httpx.Response(200, content=b"<html>oops</html>"))

    with pytest.raises(ResponseParsingError):
        await IntrascribeApi(http).get_task("t-1")
    await http.close()


@pytest.mark.asyncio
async def test_schema_mismatch_raises_parsing_error() -> None:
    http = _client(lambda request: httpx.Response(200, json={"progress": 1}))

    with pytest.raises(ResponseParsingError):
        await IntrascribeApi(http).get_task("t-1")
    await http.close()


@pytest.mark.asyncio
async def test_get_session_builds_record_with_transcriptions() -> None:
    payload = {
        "id": "s1",
        "status": "completed",
        "title": "Standup",
        "transcriptions": [{"id": "tr1", "content": "hello", "segments": [{"t": 0}]}],
    }
    http = _client(lambda request: httpx.Response(200, json=payload))

    record = await IntrascribeApi(http).get_session("s1")

    assert record.status == "completed"
    assert record.transcriptions[0].content == "hello"
    assert len(record.transcriptions[0].segments or ()) == 1
    await http.close()


@pytest.mark.asyncio
async def test_submission_with_task_id_is_deferred() -> None:
    http = _client(
        lambda request: httpx.Response(
            200, json={"task_id": "t-9", "poll_url": "/v2/tasks/t-9", "status": "pending"}
        )
    )

    submission = await IntrascribeApi(http).request_ai_summary("s1", template_id="tpl")

    assert submission == Deferred(task_id="t-9", poll_url="/v2/tasks/t-9")
    await http.close()


@pytest.mark.asyncio
async def test_summarize_sync_body_is_immediate() -> None:
    seen: list[dict[str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"summary": "Short recap", "metadata": {"tokens": 12}})

    http = _client(handler)

    submission = await IntrascribeApi(http).summarize("s1", "full text")

    assert isinstance(submission, Immediate)
    assert submission.result == {"summary": "Short recap", "metadata": {"tokens": 12}}
    assert seen == [{"transcription_text": "full text"}]
    await http.close()


@pytest.mark.asyncio
async def test_acknowledgement_without_task_is_accepted() -> None:
    http = _client(
        lambda request: httpx.Response(200, json={"success": True, "message": "finalizing"})
    )

    submission = await IntrascribeApi(http).finalize_session("s1")

    assert submission == Accepted(message="finalizing", status=None)
    await http.close()


@pytest.mark.asyncio
async def test_retranscribe_falls_back_to_v1_on_server_error() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if "/v2/" in request.url.path:
            return httpx.Response(404, json={"detail": "not found"})
        return httpx.Response(200, json={"success": True, "message": "restarted"})

    http = _client(handler)

    submission = await IntrascribeApi(http).retranscribe_session("s1")

    assert paths == ["/api/v2/sessions/s1/retranscribe", "/api/v1/sessions/s1/retranscribe"]
    assert isinstance(submission, Accepted)
    await http.close()


@pytest.mark.asyncio
async def test_retranscribe_does_not_fall_back_on_auth_failure() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(403, json={"detail": "forbidden"})

    http = _client(handler)

    with pytest.raises(AuthenticationError):
        await IntrascribeApi(http).retranscribe_session("s1")
    assert paths == ["/api/v2/sessions/s1/retranscribe"]
    await http.close()


@pytest.mark.asyncio
async def test_v1_failure_flag_is_rejected() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if "/v2/" in request.url.path:
            return httpx.Response(502)
        return httpx.Response(200, json={"success": False, "message": "no audio"})

    http = _client(handler)

    with pytest.raises(NetworkError, match="no audio"):
        await IntrascribeApi(http).retranscribe_session("s1")
    await http.close()


@pytest.mark.asyncio
async def test_successful_request_logs_duration(caplog: pytest.LogCaptureFixture) -> None:
    http = _client(lambda request: httpx.Response(200, json={"status": "pending"}))

    with caplog.at_level(logging.DEBUG, logger="intrascribe_client.http"):
        payload = await http.get_json("/v2/tasks/t-1")

    assert payload == {"status": "pending"}
    assert any("GET /v2/tasks/t-1 completed in" in message for message in caplog.messages)
    await http.close()
