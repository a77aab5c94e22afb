"""
MCP stdio client — one long-lived session per configured server.

Each server runs inside its own task: the task opens the stdio transport and
the ``ClientSession``, signals readiness, and holds both open until
``close()``. Tool listing and calls go through the shared session from any
task.
"""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from masix.config.loader import McpServerConfig

logger = logging.getLogger(__name__)


class McpError(RuntimeError):
    pass


@dataclass
class RemoteTool:
    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolOutput:
    text: str
    is_error: bool = False


class McpServerConnection:
    def __init__(self, config: McpServerConfig, *, request_timeout: float = 30.0) -> None:
        self.config = config
        self.name = config.name
        self.request_timeout = request_timeout
        self._session: ClientSession | None = None
        self._ready = asyncio.Event()
        self._closing = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._error: BaseException | None = None

    async def start(self) -> None:
        self._task = asyncio.create_task(self._serve(), name=f"mcp:{self.name}")
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=self.request_timeout)
        except asyncio.TimeoutError as exc:
            await self.close()
            raise McpError(f"MCP server '{self.name}' did not initialize in time") from exc
        if self._error is not None or self._session is None:
            raise McpError(f"MCP server '{self.name}' failed to start: {self._error}")
        logger.info("MCP server %s connected", self.name)

    async def _serve(self) -> None:
        params = StdioServerParameters(
            command=self.config.command,
            args=list(self.config.args),
            env={**os.environ, **self.config.env} if self.config.env else None,
        )
        try:
            async with stdio_client(params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    self._session = session
                    self._ready.set()
                    await self._closing.wait()
        except Exception as exc:
            self._error = exc
            logger.warning("MCP server %s stopped: %s", self.name, exc)
        finally:
            self._session = None
            self._ready.set()

    async def list_tools(self) -> list[RemoteTool]:
        session = self._require_session()
        try:
            result = await asyncio.wait_for(session.list_tools(), timeout=self.request_timeout)
        except asyncio.TimeoutError as exc:
            raise McpError(f"tools/list timed out on '{self.name}'") from exc
        except Exception as exc:
            raise McpError(f"tools/list failed on '{self.name}': {exc}") from exc
        return [
            RemoteTool(
                name=tool.name,
                description=tool.description or "",
                input_schema=dict(tool.inputSchema or {"type": "object", "properties": {}}),
            )
            for tool in result.tools
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any], *, timeout: float | None = None) -> ToolOutput:
        session = self._require_session()
        try:
            result = await asyncio.wait_for(
                session.call_tool(name, arguments), timeout=timeout or self.request_timeout
            )
        except asyncio.TimeoutError as exc:
            raise McpError(f"tool '{name}' timed out on '{self.name}'") from exc
        except Exception as exc:
            raise McpError(f"tool '{name}' failed on '{self.name}': {exc}") from exc

        parts: list[str] = []
        for item in result.content or []:
            text = getattr(item, "text", None)
            if text is not None:
                parts.append(text)
            else:
                parts.append(f"[{getattr(item, 'type', 'content')}]")
        return ToolOutput(text="\n".join(parts), is_error=bool(result.isError))

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise McpError(f"MCP server '{self.name}' is not connected")
        return self._session

    async def close(self) -> None:
        self._closing.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except asyncio.TimeoutError:
                self._task.cancel()
            self._task = None
