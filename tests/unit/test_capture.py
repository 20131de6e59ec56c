import json

import httpx
import pytest

import shaderloop.collaborators.capture as capture_module
from shaderloop.collaborators import HttpCaptureService
from shaderloop.errors import CollaboratorError

URL = "http://render.test/capture"


def _service(handler, **kwargs) -> HttpCaptureService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpCaptureService(URL, client=client, **kwargs)


@pytest.mark.asyncio
async def test_capture_posts_code_and_returns_screenshots():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"screenshots": ["data:image/png;base64,AA"] * 2})

    result = await _service(handler).capture("void mainImage() {}", [0.5, 1.0], 640, 360)
    assert result.screenshots == ["data:image/png;base64,AA"] * 2
    assert result.compilation_error is None
    assert seen["url"] == URL
    assert seen["body"] == {
        "code": "void mainImage() {}",
        "timeValues": [0.5, 1.0],
        "width": 640,
        "height": 360,
    }


@pytest.mark.asyncio
async def test_capture_reports_compilation_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "compilationError": {
                    "message": "Shader compilation failed",
                    "infoLog": "ERROR: 0:12: 'col' : undeclared identifier",
                }
            },
        )

    result = await _service(handler).capture("broken", [1.0], 640, 360)
    assert result.screenshots == []
    assert result.compilation_error.message == "Shader compilation failed"
    assert result.compilation_error.detail.startswith("ERROR: 0:12")

    def plain(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"compilation_error": "syntax error"})

    result = await _service(plain).capture("broken", [1.0], 640, 360)
    assert result.compilation_error.message == "syntax error"
    assert result.compilation_error.detail is None


@pytest.mark.asyncio
async def test_capture_http_error_is_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500, text="renderer crashed")

    with pytest.raises(CollaboratorError, match="500"):
        await _service(handler).capture("code", [1.0], 640, 360)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_capture_retries_connection_errors(monkeypatch):
    monkeypatch.setattr(capture_module, "compute_backoff", lambda attempt: 0)
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) < 2:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"screenshots": ["a"]})

    result = await _service(handler, max_attempts=3).capture("code", [1.0], 640, 360)
    assert result.screenshots == ["a"]
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_capture_gives_up_after_max_attempts(monkeypatch):
    monkeypatch.setattr(capture_module, "compute_backoff", lambda attempt: 0)

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(CollaboratorError, match="unreachable"):
        await _service(handler, max_attempts=2).capture("code", [1.0], 640, 360)
