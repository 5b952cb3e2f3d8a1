"""GitHub Copilot API client -- OpenAI-compatible endpoints over httpx.

One httpx.AsyncClient is shared by all turns. The bearer credential is
sent per request since the active account can change at any time.
No read timeout is configured: a stalled stream blocks until the user
cancels the turn.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from copilot_chat.api.stream import DeltaSink, StreamResult, decode_stream
from copilot_chat.cancellation import CancellationToken
from copilot_chat.config import Settings
from copilot_chat.errors import TransientError, UpstreamError

logger = logging.getLogger(__name__)


def build_headers(credential: str, settings: Settings) -> dict[str, str]:
    """Headers the Copilot API expects on every call."""
    return {
        "Authorization": f"Bearer {credential}",
        "Content-Type": "application/json",
        "Copilot-Integration-Id": settings.integration_id,
        "Editor-Version": settings.editor_version,
        "Editor-Plugin-Version": settings.editor_version,
        "OpenAI-Intent": "conversation-general",
    }


def build_chat_payload(
    model: str,
    messages: list[dict[str, Any]],
    temperature: float,
    max_tokens: int,
    tools: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Build the streaming chat completion request body."""
    payload: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
        "stream": True,
    }
    if tools:
        payload["tools"] = tools
    return payload


def extract_model_entries(data: Any) -> list[dict[str, Any]]:
    """Accept the `data`, `models` and bare-array catalog shapes."""
    if isinstance(data, dict):
        entries = data.get("data")
        if entries is None:
            entries = data.get("models")
    else:
        entries = data
    if not isinstance(entries, list):
        return []
    return [e for e in entries if isinstance(e, dict)]


def _error_from_body(status_code: int, body: bytes) -> UpstreamError:
    """Map a non-2xx response to UpstreamError, keeping the upstream message."""
    message = f"API error: {status_code}"
    try:
        data = json.loads(body)
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                message = str(error["message"])
            elif isinstance(error, str) and error:
                message = error
            elif data.get("message"):
                message = str(data["message"])
    except ValueError:
        text = body.decode("utf-8", errors="replace").strip()
        if text:
            message = f"API error: {status_code} {text[:200]}"
    return UpstreamError(message, status_code=status_code)


class CopilotClient:
    """Thin async wrapper around /models and /chat/completions."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http
        self._owns_http = http is None

    async def start(self) -> None:
        """Create the shared httpx client (connect timeout only)."""
        if self._http is not None:
            return
        timeout = httpx.Timeout(
            connect=self._settings.api_timeout_connect,
            read=None,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(
            base_url=self._settings.api_base_url,
            timeout=timeout,
            limits=limits,
        )
        self._owns_http = True
        logger.info("Copilot client initialized (%s)", self._settings.api_base_url)

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    async def fetch_models(self, credential: str) -> list[dict[str, Any]]:
        """GET /models and return the raw model entries."""
        try:
            response = await self._client().get(
                "/models", headers=build_headers(credential, self._settings)
            )
        except httpx.TransportError as e:
            raise TransientError(f"Could not reach the model catalog: {e}") from e

        if not response.is_success:
            raise _error_from_body(response.status_code, response.content)

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError("Model catalog returned invalid JSON", response.status_code) from e
        return extract_model_entries(data)

    async def stream_chat(
        self,
        credential: str,
        model: str,
        messages: list[dict[str, Any]],
        on_delta: DeltaSink | None,
        token: CancellationToken | None = None,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> StreamResult:
        """POST /chat/completions with stream=true and decode the response."""
        payload = build_chat_payload(
            model,
            messages,
            temperature=self._settings.temperature if temperature is None else temperature,
            max_tokens=self._settings.max_tokens if max_tokens is None else max_tokens,
            tools=tools,
        )
        headers = build_headers(credential, self._settings)

        try:
            async with self._client().stream(
                "POST", "/chat/completions", json=payload, headers=headers
            ) as response:
                if not response.is_success:
                    body = await response.aread()
                    raise _error_from_body(response.status_code, body)
                return await decode_stream(response.aiter_bytes(), on_delta, token)
        except httpx.TransportError as e:
            raise TransientError(f"Network error while streaming from {model}: {e}") from e
