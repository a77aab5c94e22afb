"""
ToolCallingEngine — bounded "ask model → run tools → ask again" loop.

OpenAI-compatible flow: a reply with ``tool_calls`` is appended to the
conversation, every call is executed against its owner in the ToolCatalog,
and each result goes back as a ``role="tool"`` message. The loop ends on a
plain-text reply or after MAX_TOOL_ITERATIONS model calls, whichever comes
first.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from masix.mcp.catalog import ToolCatalog, ToolContext, ToolExecutionError, tool_error_payload
from masix.monitoring.metrics import TOOL_CALLS
from masix.providers.base import ToolCall
from masix.providers.router import ProviderFailure, ProviderRouter
from masix.services.acl_service import ToolAccess
from masix.services.permissions import Role
from masix.services.profile_resolver import BotProfile

logger = logging.getLogger(__name__)

MAX_TOOL_ITERATIONS = 5
MAX_TOOL_OUTPUT_CHARS = 12_000

ITERATION_LIMIT_TEXT = (
    "I reached the tool iteration limit before finishing. Please try again with a narrower request."
)
FINALIZE_PROMPT = (
    "Finalize now using only the tool outputs gathered so far. Do not call any more tools; "
    "answer the user directly."
)

_PSEUDO_TOOL_CALL_RE = re.compile(
    r"<tool_call>|<function_call>|\"tool_calls\"\s*:|\{\s*\"name\"\s*:\s*\"[\w.-]+\"\s*,\s*\"(?:arguments|parameters)\"\s*:",
    re.IGNORECASE,
)


def looks_like_tool_call_text(text: str) -> bool:
    return bool(text) and bool(_PSEUDO_TOOL_CALL_RE.search(text))


@dataclass
class ToolLoopResult:
    text: str
    iterations: int
    used_tools: list[str] = field(default_factory=list)
    hit_limit: bool = False
    compatibility_warning: bool = False
    provider: str | None = None
    provider_failures: list[ProviderFailure] = field(default_factory=list)


class ToolCallingEngine:
    def __init__(self, router: ProviderRouter, catalog: ToolCatalog) -> None:
        self.router = router
        self.catalog = catalog

    async def run(
        self,
        profile: BotProfile,
        messages: list[dict[str, Any]],
        *,
        context: ToolContext,
        access: ToolAccess,
        preferred_provider: str | None = None,
    ) -> ToolLoopResult:
        """Drive the loop. AllProvidersFailed from the router propagates to the caller.

        The catalog is re-read first so tools an MCP server started listing
        since the last turn are offered on this one.
        """
        if access.enabled:
            await self.catalog.refresh()
        tools = self.catalog.definitions(access, context.role) if access.enabled else []
        conversation = list(messages)
        result = ToolLoopResult(text="", iterations=0)
        seen_calls: set[str] = set()
        tool_outputs: list[tuple[str, str]] = []
        partial_text = ""

        while result.iterations < MAX_TOOL_ITERATIONS:
            reply = await self.router.invoke(profile, conversation, tools or None, preferred=preferred_provider)
            result.iterations += 1
            result.provider = reply.provider
            result.provider_failures.extend(reply.failures)
            response = reply.response
            text = (response.content or "").strip()

            if not response.tool_calls:
                if looks_like_tool_call_text(text):
                    # Provider described a tool call in prose; nothing is executed.
                    result.compatibility_warning = True
                    logger.warning(
                        "Model %s returned tool-call text without a tool_calls payload",
                        reply.provider,
                        extra={"provider": reply.provider, "event": "tool_call_text_without_payload"},
                    )
                    result.text = text
                    return result
                if text:
                    result.text = text
                    return result
                if not result.used_tools:
                    result.text = partial_text
                    return result
                break

            if text:
                partial_text = text
            conversation.append(response.assistant_message())
            for call in response.tool_calls:
                output, ok = await self._execute(call, context, access, seen_calls)
                if ok:
                    tool_outputs.append((call.name, output))
                result.used_tools.append(call.name)
                conversation.append({"role": "tool", "tool_call_id": call.id, "content": output})
        else:
            result.hit_limit = True
            logger.warning(
                "Tool loop stopped at the %d-iteration safety limit",
                MAX_TOOL_ITERATIONS,
                extra={"account_tag": context.account_tag, "event": "tool_loop_limit"},
            )
            result.text = partial_text or _synthesize(tool_outputs) or ITERATION_LIMIT_TEXT
            return result

        # Tools ran but the model came back empty: one finalize pass if an iteration remains.
        if result.iterations < MAX_TOOL_ITERATIONS:
            conversation.append({"role": "user", "content": FINALIZE_PROMPT})
            reply = await self.router.invoke(profile, conversation, None, preferred=preferred_provider)
            result.iterations += 1
            result.provider = reply.provider
            result.provider_failures.extend(reply.failures)
            final_text = (reply.response.content or "").strip()
            if final_text:
                result.text = final_text
                return result
        result.text = partial_text or _synthesize(tool_outputs) or ITERATION_LIMIT_TEXT
        return result

    async def _execute(
        self,
        call: ToolCall,
        context: ToolContext,
        access: ToolAccess,
        seen_calls: set[str],
    ) -> tuple[str, bool]:
        arguments = call.parsed_arguments()
        signature = f"{call.name}:{json.dumps(arguments, sort_keys=True, ensure_ascii=False)}"
        if signature in seen_calls:
            TOOL_CALLS.labels(tool=call.name, outcome="duplicate").inc()
            return tool_error_payload("skipped duplicate tool call; reuse the earlier result"), False
        seen_calls.add(signature)

        spec = self.catalog.get(call.name)
        if spec is None:
            TOOL_CALLS.labels(tool=call.name, outcome="unknown").inc()
            return tool_error_payload(f"unknown tool '{call.name}'"), False
        if not access.permits(call.name) or (spec.admin_only and context.role != Role.admin):
            TOOL_CALLS.labels(tool=call.name, outcome="denied").inc()
            logger.info(
                "Tool %s denied for role %s",
                call.name,
                context.role.value,
                extra={"account_tag": context.account_tag, "event": "tool_denied"},
            )
            return tool_error_payload(f"tool '{call.name}' is not permitted for role {context.role.value}"), False

        try:
            output = await self.catalog.execute(call.name, arguments, context)
        except ToolExecutionError as exc:
            TOOL_CALLS.labels(tool=call.name, outcome="error").inc()
            logger.warning("Tool %s failed: %s", call.name, exc, extra={"account_tag": context.account_tag})
            return tool_error_payload(str(exc), tool=call.name), False
        except Exception as exc:
            TOOL_CALLS.labels(tool=call.name, outcome="error").inc()
            logger.error("Tool %s crashed: %s", call.name, exc, exc_info=True)
            return tool_error_payload(f"tool '{call.name}' failed unexpectedly", tool=call.name), False

        TOOL_CALLS.labels(tool=call.name, outcome="ok").inc()
        logger.info("Tool %s(%s) → %s", call.name, list(arguments.keys()), output[:80])
        if len(output) > MAX_TOOL_OUTPUT_CHARS:
            output = output[:MAX_TOOL_OUTPUT_CHARS] + "\n…[truncated]"
        return output, True


def _synthesize(tool_outputs: list[tuple[str, str]]) -> str:
    if not tool_outputs:
        return ""
    lines = ["Here is what the tools returned:"]
    for name, output in tool_outputs[-3:]:
        snippet = output.strip()
        if len(snippet) > 1200:
            snippet = snippet[:1200] + "…"
        lines.append(f"• {name}: {snippet}")
    return "\n".join(lines)
