"""
Slash commands handled before the model is called.

Every command re-checks the sender's role at the point of use: read-only
commands need Readonly, anything that mutates state needs User, and
``/admin`` / ``/exec`` need Admin (re-evaluated against the ACL store, not
taken from the decision made at message entry). A refused command is
answered with silence; the refusal is only logged.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from masix.config.loader import TelegramAccount, UserToolsMode
from masix.persistence.models import AclRole
from masix.providers.router import ProviderRouter
from masix.services.acl_service import AclService
from masix.services.cron_parser import ScheduleParseError
from masix.services.cron_service import CronJobNotFound, CronScheduler
from masix.services.exec_service import ExecDenied, ExecService
from masix.services.memory_service import MemoryService
from masix.services.permissions import PermissionDenied, Role
from masix.services.profile_resolver import BotProfile

logger = logging.getLogger(__name__)

HELP_TEXT = (
    "Commands:\n"
    "/help - this message\n"
    "/whoami - your role on this bot\n"
    "/new - start a fresh conversation\n"
    "/cron <request> - schedule a reminder, e.g. /cron domani alle 9 \"Team sync\"\n"
    "/cron list - list reminders of this chat\n"
    "/cron cancel <id> - cancel a reminder\n"
    "/provider [name|reset] - show or choose the model provider for this chat\n"
    "/admin list|add|remove|promote|demote <id> - manage users (admin)\n"
    "/admin tools user list|mode <none|selected>|allow <tool>|deny <tool>|clear - user tool policy (admin)\n"
    "/exec <command> - run an allowlisted command (admin)"
)

_ADMIN_ROLE_ACTIONS = {"add": AclRole.user, "promote": AclRole.admin, "demote": AclRole.user}


@dataclass
class CommandRequest:
    account: TelegramAccount
    profile: BotProfile
    chat_id: str
    sender_id: str
    role: Role


def split_command(text: str) -> tuple[str, str] | None:
    """``"/cron@my_bot list"`` -> ``("cron", "list")``; None when ``text`` is not a command."""
    stripped = (text or "").strip()
    if not stripped.startswith("/") or len(stripped) < 2:
        return None
    head, _, rest = stripped.partition(" ")
    name = head[1:].split("@", 1)[0].lower()
    if not name:
        return None
    return name, rest.strip()


class ChatCommands:
    def __init__(
        self,
        *,
        acl: AclService,
        cron: CronScheduler,
        memory: MemoryService,
        router: ProviderRouter,
        exec_service: ExecService,
    ) -> None:
        self.acl = acl
        self.cron = cron
        self.memory = memory
        self.router = router
        self.exec_service = exec_service
        self._preferred: dict[tuple[str, str], str] = {}

    def preferred_provider(self, account_tag: str, chat_id: str) -> str | None:
        return self._preferred.get((account_tag, chat_id))

    async def handle(self, text: str, request: CommandRequest) -> str | None:
        """Reply text for a command, ``""`` when refused silently, None when ``text`` is not a command."""
        parsed = split_command(text)
        if parsed is None:
            return None
        name, args = parsed
        try:
            if name in ("start", "help"):
                return self._require(request, Role.readonly) or HELP_TEXT
            if name == "whoami":
                return self._require(request, Role.readonly) or (
                    f"Role: {request.role.value}\nAccount: {request.account.account_tag}\n"
                    f"User id: {request.sender_id}\nChat id: {request.chat_id}"
                )
            if name == "new":
                return self._require(request, Role.user) or self._new(request)
            if name == "cron":
                return await self._cron(request, args)
            if name == "provider":
                return self._provider(request, args)
            if name == "admin":
                return self._admin(request, args)
            if name == "exec":
                return await self._exec(request, args)
        except PermissionDenied as exc:
            logger.info(
                "Command /%s refused for %s: %s",
                name,
                request.sender_id,
                exc,
                extra={"account_tag": request.account.account_tag, "event": "command_denied"},
            )
            return ""
        return f"Unknown command /{name}. Send /help for the list."

    @staticmethod
    def _require(request: CommandRequest, minimum: Role) -> None:
        if not request.role.at_least(minimum):
            raise PermissionDenied(f"{minimum.value} role required, sender is {request.role.value}")

    # ── /new ───────────────────────────────────────────────────────────────

    def _new(self, request: CommandRequest) -> str:
        self.memory.clear(request.profile, request.account.account_tag, request.chat_id)
        return "Conversation memory cleared. Let's start over."

    # ── /cron ──────────────────────────────────────────────────────────────

    async def _cron(self, request: CommandRequest, args: str) -> str:
        tag = request.account.account_tag
        verb, _, rest = args.partition(" ")
        if not args or verb.lower() == "list":
            self._require(request, Role.readonly)
            jobs = await self.cron.list_jobs(tag, request.chat_id)
            if not jobs:
                return "No active reminders."
            lines = []
            for job in jobs:
                when = job.next_run.astimezone(self.cron.timezone).strftime("%Y-%m-%d %H:%M") if job.next_run else "-"
                suffix = " (recurring)" if job.recurring else ""
                lines.append(f"#{job.id} {when}{suffix}: {job.message}")
            return "\n".join(lines)

        self._require(request, Role.user)
        if verb.lower() == "cancel":
            try:
                job_id = int(rest.strip())
            except ValueError:
                return "Usage: /cron cancel <id>"
            try:
                await self.cron.cancel(job_id, tag, request.chat_id)
            except CronJobNotFound:
                return f"Reminder #{job_id} not found."
            return f"Reminder #{job_id} cancelled."

        try:
            job_id = await self.cron.add(args, tag, request.chat_id, created_by=request.sender_id)
        except ScheduleParseError as exc:
            return f"Could not schedule that: {exc}."
        job = self.cron.store.get_cron_job(job_id)
        when = job.next_run.astimezone(self.cron.timezone).strftime("%Y-%m-%d %H:%M") if job and job.next_run else "?"
        return f"Reminder #{job_id} scheduled for {when}."

    # ── /provider ──────────────────────────────────────────────────────────

    def _provider(self, request: CommandRequest, args: str) -> str:
        key = (request.account.account_tag, request.chat_id)
        chain = self.router.chain_for(request.profile)
        choice = args.strip()
        if not choice:
            self._require(request, Role.readonly)
            current = self._preferred.get(key) or chain[0]
            return f"Provider: {current}\nChain: {' -> '.join(chain)}"

        self._require(request, Role.user)
        if choice.lower() == "reset":
            self._preferred.pop(key, None)
            return f"Provider reset to {chain[0]}."
        if choice not in chain:
            return f"Unknown provider '{choice}'. Available: {', '.join(chain)}"
        self._preferred[key] = choice
        return f"Provider for this chat set to {choice}."

    # ── /admin ─────────────────────────────────────────────────────────────

    def _admin(self, request: CommandRequest, args: str) -> str:
        self._require(request, Role.admin)
        account, actor = request.account, request.sender_id
        parts = args.split()
        if not parts or parts[0] == "list":
            entries = self.acl.list_entries(account, actor)
            return "\n".join(f"{group}: {', '.join(ids) or '-'}" for group, ids in entries.items())

        action = parts[0].lower()
        if action == "tools":
            return self._admin_tools(request, parts[1:])
        if len(parts) != 2 or not parts[1].lstrip("-").isdigit():
            return "Usage: /admin list|add|remove|promote|demote <user id>"
        target = parts[1]
        if action in _ADMIN_ROLE_ACTIONS:
            role = _ADMIN_ROLE_ACTIONS[action]
            self.acl.set_role(account, actor, target, role)
            return f"{target} is now {role.value}."
        if action == "remove":
            removed = self.acl.remove(account, actor, target)
            return f"{target} removed." if removed else f"{target} had no dynamic entry."
        return "Usage: /admin list|add|remove|promote|demote <user id>"

    def _admin_tools(self, request: CommandRequest, parts: list[str]) -> str:
        usage = "Usage: /admin tools user list|mode <none|selected>|allow <tool>|deny <tool>|clear"
        if not parts or parts[0] != "user" or len(parts) < 2:
            return usage
        account, actor = request.account, request.sender_id
        action, rest = parts[1].lower(), parts[2:]
        if action == "list":
            self.acl.require_admin(account, actor)
            mode, allowed = self.acl.effective_tool_policy(account)
        elif action == "mode" and len(rest) == 1 and rest[0] in {m.value for m in UserToolsMode}:
            mode, allowed = self.acl.update_tool_policy(account, actor, mode=UserToolsMode(rest[0]))
        elif action == "allow" and len(rest) == 1:
            mode, allowed = self.acl.update_tool_policy(account, actor, allow=rest[0])
        elif action == "deny" and len(rest) == 1:
            mode, allowed = self.acl.update_tool_policy(account, actor, deny=rest[0])
        elif action == "clear" and not rest:
            mode, allowed = self.acl.update_tool_policy(account, actor, clear=True)
        else:
            return usage
        return f"User tools mode: {mode.value}\nAllowed: {', '.join(sorted(allowed)) or '-'}"

    # ── /exec ──────────────────────────────────────────────────────────────

    async def _exec(self, request: CommandRequest, args: str) -> str:
        self._require(request, Role.admin)
        self.acl.require_admin(request.account, request.sender_id)
        if not args:
            return "Usage: /exec <command>"
        try:
            result = await self.exec_service.run(args, request.profile.workdir)
        except ExecDenied as exc:
            return f"Exec refused: {exc}"
        return result.format_for_chat()
