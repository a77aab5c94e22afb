"""
ToolCatalog — the single flat tool set the model sees.

MCP tools are exposed as ``<server>_<tool>``; built-in tools keep their own
names. The catalog remembers which server owns each flattened name and
dispatches calls accordingly.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from masix.config.loader import McpServerConfig
from masix.mcp.client import McpError, McpServerConnection, RemoteTool
from masix.services.acl_service import ToolAccess
from masix.services.permissions import Role

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]")


class ToolExecutionError(RuntimeError):
    pass


@dataclass
class ToolContext:
    channel: str
    account_tag: str
    chat_id: str
    sender_id: str
    role: Role
    workdir: str | None = None


BuiltinHandler = Callable[[dict[str, Any], ToolContext], Awaitable[str]]


class ToolServer(Protocol):
    name: str

    async def list_tools(self) -> list[RemoteTool]: ...

    async def call_tool(self, name: str, arguments: dict[str, Any], *, timeout: float | None = None): ...

    async def close(self) -> None: ...


@dataclass
class ToolSpec:
    name: str
    description: str
    parameters: dict[str, Any]
    server: str | None = None
    remote_name: str | None = None
    handler: BuiltinHandler | None = None
    admin_only: bool = False

    def definition(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


def flatten_name(server: str, tool: str) -> str:
    return _NAME_RE.sub("_", f"{server}_{tool}")[:64]


class ToolCatalog:
    def __init__(self, *, tool_timeout: float = 30.0) -> None:
        self.tool_timeout = tool_timeout
        self._servers: dict[str, ToolServer] = {}
        self._builtins: dict[str, ToolSpec] = {}
        self._remote: dict[str, ToolSpec] = {}

    def register_builtin(
        self,
        name: str,
        description: str,
        parameters: dict[str, Any],
        handler: BuiltinHandler,
        *,
        admin_only: bool = False,
    ) -> None:
        self._builtins[name] = ToolSpec(
            name=name,
            description=description,
            parameters=parameters,
            handler=handler,
            admin_only=admin_only,
        )

    def add_server(self, server: ToolServer) -> None:
        self._servers[server.name] = server

    async def connect(self, configs: list[McpServerConfig] | tuple[McpServerConfig, ...]) -> None:
        for config in configs:
            connection = McpServerConnection(config, request_timeout=self.tool_timeout)
            try:
                await connection.start()
            except McpError as exc:
                logger.warning("Skipping MCP server %s: %s", config.name, exc)
                continue
            self.add_server(connection)
        await self.refresh()

    async def refresh(self) -> None:
        """Re-read every server's tool list; a failing server contributes no tools."""
        remote: dict[str, ToolSpec] = {}
        for server_name, server in self._servers.items():
            try:
                tools = await server.list_tools()
            except McpError as exc:
                logger.warning("Could not list tools of MCP server %s: %s", server_name, exc)
                continue
            for tool in tools:
                flat = flatten_name(server_name, tool.name)
                if flat in self._builtins or flat in remote:
                    logger.warning("Tool name collision on %s; keeping the first definition", flat)
                    continue
                remote[flat] = ToolSpec(
                    name=flat,
                    description=tool.description,
                    parameters=tool.input_schema,
                    server=server_name,
                    remote_name=tool.name,
                )
        self._remote = remote

    def get(self, name: str) -> ToolSpec | None:
        return self._builtins.get(name) or self._remote.get(name)

    def names(self) -> list[str]:
        return sorted([*self._builtins, *self._remote])

    def definitions(self, access: ToolAccess, role: Role) -> list[dict[str, Any]]:
        specs = [*self._builtins.values(), *self._remote.values()]
        return [
            spec.definition()
            for spec in specs
            if access.permits(spec.name) and (not spec.admin_only or role == Role.admin)
        ]

    async def execute(self, name: str, arguments: dict[str, Any], context: ToolContext) -> str:
        spec = self.get(name)
        if spec is None:
            raise ToolExecutionError(f"unknown tool '{name}'")
        if spec.handler is not None:
            try:
                return await asyncio.wait_for(spec.handler(arguments, context), timeout=self.tool_timeout)
            except asyncio.TimeoutError as exc:
                raise ToolExecutionError(f"tool '{name}' timed out after {self.tool_timeout:.0f}s") from exc

        server = self._servers.get(spec.server or "")
        if server is None:
            raise ToolExecutionError(f"MCP server for '{name}' is not connected")
        try:
            output = await server.call_tool(spec.remote_name or name, arguments, timeout=self.tool_timeout)
        except McpError as exc:
            raise ToolExecutionError(str(exc)) from exc
        if output.is_error:
            raise ToolExecutionError(output.text or f"tool '{name}' reported an error")
        return output.text

    async def aclose(self) -> None:
        for server in self._servers.values():
            await server.close()
        self._servers.clear()
        self._remote.clear()


def tool_error_payload(message: str, **extra: Any) -> str:
    return json.dumps({"ok": False, "error": message, **extra}, ensure_ascii=False)
