"""OpenRouter LLM client for Conclave.

Thin httpx client for OpenRouter's OpenAI-compatible endpoint. Each call is
a single request: retry, rate-limit pausing and circuit breaking belong to
the ResilientExecutor that wraps the actor turn, so transport failures are
translated into typed errors whose messages the retry classifier understands.
"""

from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Optional

import httpx

from src.core.config import LLMConfig
from src.core.exceptions import (
    AuthenticationError,
    LLMError,
    RateLimitError,
    ResponseParseError,
)

logger = logging.getLogger("conclave.llm")


class LLMMessage:
    """A single message in a conversation."""

    def __init__(self, role: str, content: str):
        self.role = role
        self.content = content

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class LLMResponse:
    """Parsed response from the LLM."""

    def __init__(
        self,
        content: str,
        model: str,
        tokens_used: int = 0,
        raw: Optional[dict] = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
    ):
        self.content = content
        self.model = model
        self.tokens_used = tokens_used
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.raw = raw or {}


class OpenRouterClient:
    """HTTP client for OpenRouter's chat completions API.

    Model IDs come from config/models.yaml; this client never hardcodes them.
    """

    def __init__(self, config: Optional[LLMConfig] = None, api_key: Optional[str] = None):
        self.config = config or LLMConfig()
        self.api_key = api_key or os.getenv("OPENROUTER_API_KEY", "")
        self.base_url = self.config.base_url.rstrip("/")
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=httpx.Timeout(self.config.timeout_seconds),
            )
        return self._client

    def complete(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        response_format: Optional[dict] = None,
    ) -> LLMResponse:
        """Send one chat completion request.

        Raises:
            AuthenticationError: Missing or rejected API key.
            RateLimitError: HTTP 429.
            LLMError: Timeouts, network failures, server errors and other
                non-2xx responses. The message names the cause so the
                retry classifier can tell transient from fatal.
            ResponseParseError: The body is not a chat completion.
        """
        if not self.api_key:
            raise AuthenticationError("OPENROUTER_API_KEY not set")

        payload: dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "temperature": temperature if temperature is not None else self.config.default_temperature,
            "max_tokens": max_tokens or self.config.default_max_tokens,
        }
        if response_format:
            payload["response_format"] = response_format

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": "Conclave",
        }

        try:
            resp = self.client.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise LLMError(f"timeout calling {model}: {e}") from e
        except httpx.TransportError as e:
            raise LLMError(f"network error calling {model}: {e}") from e

        if resp.status_code in (401, 403):
            raise AuthenticationError("Invalid API key")
        if resp.status_code == 429:
            raise RateLimitError("rate limit exceeded (429)")
        if resp.status_code >= 500:
            raise LLMError(f"OpenRouter server error for {model}: HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise LLMError(
                f"OpenRouter rejected request for {model}: HTTP {resp.status_code} {resp.text[:200]}"
            )

        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ResponseParseError(f"Malformed completion body from {model}: {e}") from e

        usage = data.get("usage") or {}
        input_tokens = usage.get("prompt_tokens", 0)
        output_tokens = usage.get("completion_tokens", 0)
        tokens = usage.get("total_tokens", input_tokens + output_tokens)
        used_model = data.get("model", model)

        logger.debug("LLM response: model=%s tokens=%d", used_model, tokens)
        return LLMResponse(
            content=content or "",
            model=used_model,
            tokens_used=tokens,
            raw=data,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    def complete_json(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: Optional[float] = None,
    ) -> tuple[dict[str, Any], LLMResponse]:
        """Completion expecting a JSON object. Strips markdown fences if present."""
        response = self.complete(
            messages=messages,
            model=model,
            temperature=temperature,
            response_format={"type": "json_object"},
        )
        return _parse_json_response(response.content), response

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None


def _parse_json_response(text: str) -> dict[str, Any]:
    """Parse JSON from LLM response, stripping markdown code fences if present."""
    cleaned = text.strip()

    # Strip markdown code fences
    fence_pattern = r"^```(?:json)?\s*\n?(.*?)\n?```$"
    match = re.match(fence_pattern, cleaned, re.DOTALL)
    if match:
        cleaned = match.group(1).strip()

    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ResponseParseError(f"Failed to parse JSON from LLM response: {e}\nRaw: {text[:500]}") from e
    if not isinstance(parsed, dict):
        raise ResponseParseError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed
