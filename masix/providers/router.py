"""
ProviderRouter — ordered fallback across a profile's provider chain.

For each provider in ``[primary] + fallback``:
  - transient failures (network, timeout, 429, 5xx) are retried with
    exponential backoff while the retry window allows another attempt;
  - permanent failures (auth, validation, malformed reply) or an exhausted
    window move on to the next provider immediately.

The first successful reply wins. When the whole chain fails the caller gets
``AllProvidersFailed`` with every per-provider failure in chain order.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type

from masix.config.loader import RetryPolicyConfig
from masix.monitoring.metrics import PROVIDER_ATTEMPTS
from masix.providers.base import ChatResponse, ProviderError, TransientProviderError
from masix.providers.registry import ProviderRegistry

if TYPE_CHECKING:
    from masix.services.profile_resolver import BotProfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    window_secs: float = 600.0
    initial_delay_secs: float = 2.0
    backoff_factor: float = 2.0
    max_delay_secs: float = 30.0

    @classmethod
    def from_config(cls, config: RetryPolicyConfig | None) -> "RetryPolicy":
        if config is None:
            return cls()
        return cls(
            window_secs=float(config.window_secs),
            initial_delay_secs=float(config.initial_delay_secs),
            backoff_factor=float(config.backoff_factor),
            max_delay_secs=float(config.max_delay_secs),
        )

    def delay_for(self, retry_index: int) -> float:
        """Delay before retry number ``retry_index`` (0-based): initial * factor^n, capped."""
        delay = self.initial_delay_secs * (self.backoff_factor ** max(retry_index, 0))
        return min(delay, self.max_delay_secs)


@dataclass(frozen=True)
class ProviderFailure:
    provider: str
    reason: str
    attempts: int
    transient: bool


class AllProvidersFailed(ProviderError):
    def __init__(self, failures: list[ProviderFailure]) -> None:
        self.failures = list(failures)
        summary = "; ".join(f"{f.provider}: {f.reason}" for f in self.failures) or "empty provider chain"
        super().__init__(f"all providers failed ({summary})")


@dataclass
class RoutedReply:
    response: ChatResponse
    provider: str
    attempts: int
    failures: list[ProviderFailure] = field(default_factory=list)


class ProviderRouter:
    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        attempt_timeout: float = 120.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self._attempt_timeout = attempt_timeout
        self._sleep = sleep
        self._clock = clock

    @staticmethod
    def chain_for(profile: "BotProfile", preferred: str | None = None) -> list[str]:
        chain = [profile.provider_primary, *profile.provider_fallback]
        if preferred and preferred in chain:
            chain.remove(preferred)
            chain.insert(0, preferred)
        return chain

    def describe(self, profile: "BotProfile") -> dict[str, Any]:
        return {
            "profile": profile.name,
            "chain": self.chain_for(profile),
            "vision_provider": profile.vision_provider,
            "retry": {
                "window_secs": profile.retry.window_secs,
                "initial_delay_secs": profile.retry.initial_delay_secs,
                "backoff_factor": profile.retry.backoff_factor,
                "max_delay_secs": profile.retry.max_delay_secs,
            },
        }

    async def invoke(
        self,
        profile: "BotProfile",
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        *,
        preferred: str | None = None,
    ) -> RoutedReply:
        return await self.invoke_chain(
            self.chain_for(profile, preferred), messages, tools, policy=profile.retry, label=profile.name
        )

    async def invoke_chain(
        self,
        chain: list[str],
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        *,
        policy: RetryPolicy,
        label: str = "",
    ) -> RoutedReply:
        failures: list[ProviderFailure] = []
        for name in chain:
            attempts = 0

            def _count(_state: RetryCallState) -> None:
                nonlocal attempts
                attempts += 1

            try:
                response = await self._call_with_retry(name, messages, tools, policy, on_attempt=_count)
            except ProviderError as exc:
                failure = ProviderFailure(
                    provider=name,
                    reason=str(exc),
                    attempts=max(attempts, 1),
                    transient=isinstance(exc, TransientProviderError),
                )
                failures.append(failure)
                PROVIDER_ATTEMPTS.labels(provider=name, outcome="failed").inc()
                logger.warning(
                    "Provider %s failed after %d attempt(s): %s",
                    name,
                    failure.attempts,
                    failure.reason,
                    extra={"provider": name, "event": "provider_failed"},
                )
                continue

            PROVIDER_ATTEMPTS.labels(provider=name, outcome="ok").inc()
            if failures:
                logger.info(
                    "Provider %s answered after %d earlier failure(s) for %s",
                    name,
                    len(failures),
                    label or "chain",
                    extra={"provider": name},
                )
            return RoutedReply(response=response, provider=name, attempts=max(attempts, 1), failures=failures)

        logger.error(
            "Provider chain exhausted for %s: %s",
            label or "chain",
            " | ".join(f"{f.provider}: {f.reason}" for f in failures),
            extra={"event": "provider_chain_exhausted"},
        )
        raise AllProvidersFailed(failures)

    async def _call_with_retry(
        self,
        name: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        policy: RetryPolicy,
        *,
        on_attempt: Callable[[RetryCallState], None],
    ) -> ChatResponse:
        provider = self.registry.get(name)
        started = self._clock()

        def _wait(state: RetryCallState) -> float:
            return policy.delay_for(state.attempt_number - 1)

        def _stop(state: RetryCallState) -> bool:
            elapsed = max(self._clock() - started, state.idle_for)
            return elapsed + policy.delay_for(state.attempt_number - 1) > policy.window_secs

        def _log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.debug(
                "Provider %s attempt %d failed (%s); retrying",
                name,
                state.attempt_number,
                exc,
                extra={"provider": name},
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientProviderError),
            wait=_wait,
            stop=_stop,
            sleep=self._sleep,
            before=on_attempt,
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._attempt(provider, messages, tools)
        raise TransientProviderError(f"{name}: retry loop ended without an outcome")

    async def _attempt(self, provider, messages, tools) -> ChatResponse:  # noqa: ANN001
        try:
            async with asyncio.timeout(self._attempt_timeout):
                return await provider.chat(messages, tools=tools)
        except TimeoutError as exc:
            raise TransientProviderError(
                f"{provider.name} timed out after {self._attempt_timeout:.0f}s"
            ) from exc
