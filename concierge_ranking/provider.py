from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Optional, Protocol

import httpx
from loguru import logger

from .config import EngineConfig
from .pipeline_types import FailureKind, ProviderFailure, ProviderPayload, ProviderReply

CONNECT_TIMEOUT_S = 3.0
MAX_ERROR_BODY_CHARS = 500


class ProviderClient(Protocol):
    async def call(self, payload: Dict[str, Any], deadline_s: float) -> ProviderReply:
        """Send one request; return the raw text or a typed failure."""
        ...


def _error_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text[:MAX_ERROR_BODY_CHARS]


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


class OpenAIChatClient:
    """
    OpenAI-compatible chat completions transport.

    One HTTP call per ``call``; no retry here (the orchestrator owns retries).
    A caller-owned ``httpx.AsyncClient`` may be injected (tests pass one with
    a MockTransport); otherwise a client is opened per call and closed on
    return, timeout or cancellation.
    """

    def __init__(self, config: EngineConfig, http_client: Optional[httpx.AsyncClient] = None):
        self._config = config
        self._http = http_client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        return headers

    async def _post(self, client: httpx.AsyncClient, payload: Dict[str, Any], deadline_s: float) -> httpx.Response:
        return await asyncio.wait_for(
            client.post(self._config.api_url, json=payload, headers=self._headers()),
            timeout=deadline_s,
        )

    async def call(self, payload: Dict[str, Any], deadline_s: float) -> ProviderReply:
        start = time.perf_counter()
        timeout = httpx.Timeout(deadline_s, connect=min(CONNECT_TIMEOUT_S, deadline_s))
        try:
            if self._http is not None:
                resp = await self._post(self._http, payload, deadline_s)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    resp = await self._post(client, payload, deadline_s)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("Provider call timed out after {:.1f}s", deadline_s)
            return ProviderFailure(
                kind=FailureKind.TIMEOUT,
                detail=f"no response within {deadline_s:.1f}s",
                elapsed_ms=_elapsed_ms(start),
            )
        except httpx.HTTPError as e:
            logger.warning("Provider transport error: {}", type(e).__name__)
            return ProviderFailure(
                kind=FailureKind.TRANSPORT_ERROR,
                detail=type(e).__name__,
                elapsed_ms=_elapsed_ms(start),
            )

        elapsed = _elapsed_ms(start)
        if resp.status_code >= 400:
            logger.warning("Provider HTTP {}", resp.status_code)
            return ProviderFailure(
                kind=FailureKind.TRANSPORT_ERROR,
                detail=f"HTTP {resp.status_code}",
                status_code=resp.status_code,
                error_body=_error_body(resp),
                elapsed_ms=elapsed,
            )

        try:
            data = resp.json()
        except ValueError:
            return ProviderFailure(
                kind=FailureKind.EMPTY_OR_UNPARSEABLE,
                detail="response body is not JSON",
                status_code=resp.status_code,
                elapsed_ms=elapsed,
            )
        return self._interpret(data, elapsed)

    @staticmethod
    def _interpret(data: Any, elapsed: float) -> ProviderReply:
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices or not isinstance(choices[0], dict):
            return ProviderFailure(
                kind=FailureKind.EMPTY_OR_UNPARSEABLE,
                detail="response has no choices",
                structurally_empty=True,
                elapsed_ms=elapsed,
            )

        choice = choices[0]
        message = choice.get("message") or {}
        finish_reason = choice.get("finish_reason")
        if not isinstance(message, dict):
            return ProviderFailure(
                kind=FailureKind.EMPTY_OR_UNPARSEABLE,
                detail=f"response message is not an object (finish_reason={finish_reason})",
                structurally_empty=True,
                elapsed_ms=elapsed,
            )

        if message.get("refusal") or finish_reason == "content_filter":
            return ProviderFailure(
                kind=FailureKind.PROVIDER_REFUSAL,
                detail=f"refused (finish_reason={finish_reason})",
                elapsed_ms=elapsed,
            )

        content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            return ProviderFailure(
                kind=FailureKind.EMPTY_OR_UNPARSEABLE,
                detail=f"no content in response (finish_reason={finish_reason})",
                structurally_empty=True,
                elapsed_ms=elapsed,
            )

        if finish_reason == "length":
            logger.info("Provider reply hit the token limit; repair ladder will try to salvage it")
        return ProviderPayload(text=content, finish_reason=finish_reason, elapsed_ms=elapsed)
