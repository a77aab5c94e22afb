from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from masix.config.loader import ProviderConfig

_TRANSIENT_STATUS = {408, 409, 425, 429}


class ProviderError(RuntimeError):
    """Domain-level provider exception."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Network error, timeout, rate limit or 5xx: worth another attempt on the same provider."""


class PermanentProviderError(ProviderError):
    """Auth/validation failure or an unusable response: move on to the next provider."""


def classify_status(status_code: int, message: str) -> ProviderError:
    if status_code >= 500 or status_code in _TRANSIENT_STATUS:
        return TransientProviderError(message, status_code=status_code)
    return PermanentProviderError(message, status_code=status_code)


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> dict[str, Any]:
        try:
            value = json.loads(self.arguments or "{}")
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}

    def to_message(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments or "{}"},
        }


@dataclass
class ChatResponse:
    content: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    model: str | None = None
    usage: dict[str, int] = field(default_factory=dict)

    def assistant_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [tc.to_message() for tc in self.tool_calls]
        return message


class ChatProvider(ABC):
    """Common provider contract: one chat/completions round-trip per call."""

    provider_type: str = "base"

    def __init__(self, config: ProviderConfig) -> None:
        self.config = config
        self.name = config.name

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
    ) -> ChatResponse:
        """Send ``messages`` and return the parsed reply. Raises ProviderError subclasses."""

    async def aclose(self) -> None:
        return None
