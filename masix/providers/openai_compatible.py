"""
OpenAI-compatible chat/completions provider.

Covers every endpoint that speaks the ``/chat/completions`` shape (OpenAI,
OpenRouter, z.ai, DeepSeek, Ollama, llama.cpp servers, ...). Status codes are
mapped onto transient/permanent errors so the router can decide whether to
retry the same provider or move on.
"""
from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from masix.config.loader import ProviderConfig
from masix.providers.base import (
    ChatProvider,
    ChatResponse,
    PermanentProviderError,
    ToolCall,
    TransientProviderError,
    classify_status,
)

logger = logging.getLogger(__name__)

_AUTH_MARKERS = ("unauthorized", "forbidden", "invalid api key", "invalid_api_key", "api key")


class OpenAICompatibleProvider(ChatProvider):
    provider_type = "openai"

    def __init__(
        self,
        config: ProviderConfig,
        *,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(config)
        self._timeout = timeout
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    def _auth_headers(self) -> dict[str, str]:
        # Local servers (Ollama, llama.cpp) usually run without a key.
        if not self.config.api_key:
            return {}
        return {"Authorization": f"Bearer {self.config.api_key}"}

    def _endpoint(self) -> str:
        base = self.config.base_url.rstrip("/")
        if base.endswith("/chat/completions"):
            return base
        return f"{base}/chat/completions"

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
    ) -> ChatResponse:
        payload: dict[str, Any] = {
            "model": model or self.config.model,
            "messages": messages,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        headers = {"Content-Type": "application/json", **self._auth_headers()}
        try:
            response = await self._client.post(self._endpoint(), headers=headers, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            body = exc.response.text[:500]
            raise classify_status(status, f"{self.name} API error {status}: {body}") from exc
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"{self.name} request timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise TransientProviderError(f"{self.name} request failed: {exc}") from exc
        except ValueError as exc:
            raise PermanentProviderError(f"{self.name} returned a non-JSON body") from exc

        return self.parse_response(data)

    def parse_response(self, data: Any) -> ChatResponse:
        if not isinstance(data, dict):
            raise PermanentProviderError(f"{self.name} returned an unexpected payload")
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            lowered = (message or "").lower()
            if any(marker in lowered for marker in _AUTH_MARKERS):
                raise PermanentProviderError(f"{self.name} auth error: {message}")
            raise TransientProviderError(f"{self.name} error payload: {message}")

        choices = data.get("choices") or []
        if not choices:
            raise PermanentProviderError(f"{self.name} returned no choices")
        choice = choices[0]
        message = choice.get("message") or {}

        tool_calls: list[ToolCall] = []
        for index, raw in enumerate(message.get("tool_calls") or []):
            function = raw.get("function") or {}
            name = function.get("name")
            if not name:
                logger.warning("Dropping tool call without a function name from %s", self.name)
                continue
            arguments = function.get("arguments")
            if isinstance(arguments, dict):
                arguments = json.dumps(arguments)
            tool_calls.append(
                ToolCall(id=raw.get("id") or f"call_{index}", name=name, arguments=arguments or "{}")
            )

        content = message.get("content")
        if isinstance(content, list):
            content = "".join(part.get("text", "") for part in content if isinstance(part, dict))

        usage = data.get("usage") or {}
        return ChatResponse(
            content=content,
            tool_calls=tool_calls,
            finish_reason=choice.get("finish_reason"),
            model=data.get("model"),
            usage={
                "input_tokens": int(usage.get("prompt_tokens") or 0),
                "output_tokens": int(usage.get("completion_tokens") or 0),
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()
