"""
Built-in tools exposed next to the MCP catalog.

Cron tools act on the calling account tag and chat only; ``exec`` is admin
only and re-checks the caller's current role before running anything.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from masix.config.loader import RuntimeConfig
from masix.mcp.catalog import ToolCatalog, ToolContext, ToolExecutionError
from masix.services.acl_service import AclService
from masix.services.cron_parser import ScheduleParseError
from masix.services.cron_service import CronJobNotFound, CronScheduler
from masix.services.exec_service import ExecDenied, ExecService
from masix.services.permissions import PermissionDenied

logger = logging.getLogger(__name__)


def _ok(**payload: Any) -> str:
    return json.dumps({"ok": True, **payload}, ensure_ascii=False, default=str)


def register_builtin_tools(
    catalog: ToolCatalog,
    *,
    config: RuntimeConfig,
    cron: CronScheduler,
    acl: AclService,
    exec_service: ExecService,
) -> None:
    async def cron_add(args: dict[str, Any], ctx: ToolContext) -> str:
        request = str(args.get("request") or "").strip()
        try:
            job_id = await cron.add(request, ctx.account_tag, ctx.chat_id, created_by=ctx.sender_id)
        except ScheduleParseError as exc:
            raise ToolExecutionError(f"could not schedule: {exc}") from exc
        job = cron.store.get_cron_job(job_id)
        return _ok(id=job_id, next_run=job.next_run.isoformat() if job and job.next_run else None)

    async def cron_list(args: dict[str, Any], ctx: ToolContext) -> str:
        jobs = await cron.list_jobs(ctx.account_tag, ctx.chat_id)
        return _ok(
            jobs=[
                {
                    "id": job.id,
                    "message": job.message,
                    "next_run": job.next_run.isoformat() if job.next_run else None,
                    "recurring": job.recurring,
                }
                for job in jobs
            ]
        )

    async def cron_cancel(args: dict[str, Any], ctx: ToolContext) -> str:
        try:
            job_id = int(args.get("job_id"))
        except (TypeError, ValueError) as exc:
            raise ToolExecutionError("job_id must be an integer") from exc
        try:
            await cron.cancel(job_id, ctx.account_tag, ctx.chat_id)
        except CronJobNotFound as exc:
            raise ToolExecutionError(str(exc)) from exc
        return _ok(cancelled=job_id)

    async def exec_tool(args: dict[str, Any], ctx: ToolContext) -> str:
        account = config.telegram_account(ctx.account_tag)
        if account is None:
            raise ToolExecutionError("exec is only available to telegram accounts")
        try:
            acl.require_admin(account, ctx.sender_id)
            result = await exec_service.run(str(args.get("command") or ""), Path(ctx.workdir or "."))
        except (PermissionDenied, ExecDenied) as exc:
            raise ToolExecutionError(str(exc)) from exc
        return _ok(
            command=result.command,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            timed_out=result.timed_out,
        )

    catalog.register_builtin(
        "cron_add",
        "Schedule a reminder for this chat from a natural-language request, "
        "e.g. 'domani alle 9 \"Team sync\"' or 'every monday at 8 \"Standup\"'.",
        {
            "type": "object",
            "properties": {"request": {"type": "string", "description": "Schedule phrase with the quoted message"}},
            "required": ["request"],
        },
        cron_add,
    )
    catalog.register_builtin(
        "cron_list",
        "List the active reminders of this chat.",
        {"type": "object", "properties": {}},
        cron_list,
    )
    catalog.register_builtin(
        "cron_cancel",
        "Cancel one reminder of this chat by id.",
        {
            "type": "object",
            "properties": {"job_id": {"type": "integer", "description": "Reminder id from cron_list"}},
            "required": ["job_id"],
        },
        cron_cancel,
    )
    if exec_service.enabled:
        catalog.register_builtin(
            "exec",
            "Run an allowlisted command in the bot workdir ("
            + ", ".join(exec_service.config.allowlist)
            + ").",
            {
                "type": "object",
                "properties": {"command": {"type": "string", "description": "Command line, e.g. 'ls -la'"}},
                "required": ["command"],
            },
            exec_tool,
            admin_only=True,
        )
    logger.info("Built-in tools registered: %s", ", ".join(name for name in catalog.names()))
