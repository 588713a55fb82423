"""OpenRouter chat-completion client.

Docs: https://openrouter.ai/docs/api-reference/chat-completion
Bearer-token auth; one JSON request per completion, no streaming.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from relay.config import OpenRouterConfig, RetryPolicy
from relay.errors import ErrorCode, ErrorKind, RelayError, create_upstream_error, timeout_error
from relay.resilience import CallObserver, call_with_policy

logger = logging.getLogger(__name__)

_FENCE_JSON_RE = re.compile(r"```json\s*([\s\S]*?)\s*```")
_FENCE_ANY_RE = re.compile(r"```\s*([\s\S]*?)\s*```")


def strip_code_fences(text: str) -> str:
    """Unwrap markdown code blocks the model added despite instructions."""
    text = _FENCE_JSON_RE.sub(r"\1", text)
    text = _FENCE_ANY_RE.sub(r"\1", text)
    return text.strip()


def extract_text(response: dict[str, Any]) -> str:
    """First choice's message content, or an empty string."""
    choices = response.get("choices") or []
    if not choices:
        return ""
    message = choices[0].get("message") or {}
    return message.get("content") or ""


class OpenRouterClient:
    """Sends chat completions through retry(timeout(single attempt))."""

    def __init__(
        self,
        config: OpenRouterConfig,
        retry: RetryPolicy,
        http: httpx.AsyncClient,
        *,
        observer: CallObserver | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._config = config
        self._retry = retry
        self._http = http
        self._observer = observer
        self._sleep = sleep

    def _headers(self, api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self._config.site_url,
            "X-Title": self._config.app_title,
        }

    async def _request_once(self, api_key: str, payload: dict[str, Any]) -> dict[str, Any]:
        """One POST; every failure comes back as a ``RelayError``."""
        url = f"{self._config.base_url}/chat/completions"
        try:
            resp = await self._http.post(
                url,
                json=payload,
                headers=self._headers(api_key),
                timeout=self._config.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise timeout_error("OpenRouter API request timed out", seconds=self._config.timeout_seconds) from e
        except httpx.TransportError as e:
            raise create_upstream_error(f"OpenRouter request failed: {e!r}") from e

        if not resp.is_success:
            raise create_upstream_error(
                f"OpenRouter API error: {resp.status_code} {resp.reason_phrase}",
                resp.status_code,
                resp.text,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise RelayError(
                ErrorKind.UPSTREAM_HTTP,
                "OpenRouter returned a non-JSON body",
                code=ErrorCode.API_INVALID_RESPONSE,
                status=resp.status_code,
                detail=resp.text[:500],
            ) from e

    async def complete(
        self,
        prompt: str,
        *,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        name: str = "OpenRouter completion",
    ) -> dict[str, Any]:
        """Return the raw completion response for a single user message."""
        api_key = self._config.require_api_key()
        model = model or self._config.default_model
        payload = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens or self._config.max_tokens,
            "temperature": self._config.temperature if temperature is None else temperature,
            "stream": False,
        }
        logger.info(f"Calling OpenRouter: model={model}, prompt_chars={len(prompt)}")
        return await call_with_policy(
            lambda: self._request_once(api_key, payload),
            name,
            self._retry,
            timeout=self._config.timeout_seconds,
            timeout_message="OpenRouter API request timed out",
            context=model,
            observer=self._observer,
            sleep=self._sleep,
        )

    async def complete_text(self, prompt: str, **kwargs: Any) -> str:
        """``complete`` and return the first choice's text, fences stripped."""
        return strip_code_fences(extract_text(await self.complete(prompt, **kwargs)))
