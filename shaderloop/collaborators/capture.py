"""HTTP client for the shader render service."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

import httpx

from ..contracts import CompilationError
from ..errors import CollaboratorError
from ..utils.retry import compute_backoff
from .base import CaptureResult

logger = logging.getLogger(__name__)


class HttpCaptureService:
    """Render shaders through a remote capture endpoint.

    The endpoint receives ``{code, timeValues, width, height}`` and answers
    with ``{screenshots: [...]}`` or, when the shader does not compile,
    ``{compilationError: {message, infoLog?}}``. Connection failures are
    retried with exponential backoff; HTTP errors are not.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 60.0,
        max_attempts: int = 3,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._client = client

    async def _post(self, payload: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.url, json=payload, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.url, json=payload)

    async def capture(
        self,
        code: str,
        time_values: Sequence[float],
        width: int,
        height: int,
    ) -> CaptureResult:
        payload = {
            "code": code,
            "timeValues": list(time_values),
            "width": width,
            "height": height,
        }
        attempt = 0
        while True:
            try:
                response = await self._post(payload)
                break
            except httpx.TransportError as exc:
                attempt += 1
                if attempt >= self.max_attempts:
                    raise CollaboratorError(
                        f"Capture service unreachable at {self.url}: {exc}"
                    ) from exc
                delay = compute_backoff(attempt)
                logger.warning(
                    f"Capture request failed ({exc}); retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        if response.status_code >= 400:
            raise CollaboratorError(
                f"Capture service returned {response.status_code}: {response.text[:200]}"
            )
        data = response.json()
        error = data.get("compilationError") or data.get("compilation_error")
        if error:
            if isinstance(error, str):
                error = {"message": error}
            return CaptureResult(
                compilation_error=CompilationError(
                    message=error.get("message") or "Shader compilation failed",
                    detail=error.get("detail") or error.get("infoLog"),
                )
            )
        return CaptureResult(screenshots=list(data.get("screenshots") or []))
