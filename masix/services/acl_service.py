from __future__ import annotations

import logging
from dataclasses import dataclass

from masix.config.loader import ForwardingConfig, TelegramAccount, UserToolsMode
from masix.persistence.models import AclRole
from masix.persistence.store import Store
from masix.services.permissions import PermissionDecision, PermissionDenied, PermissionEvaluator, Role

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolAccess:
    """Which tools a role may see. ``allowed is None`` means every tool."""

    enabled: bool
    allowed: frozenset[str] | None = None

    def permits(self, tool_name: str) -> bool:
        if not self.enabled:
            return False
        return self.allowed is None or tool_name in self.allowed


NO_TOOLS = ToolAccess(enabled=False, allowed=frozenset())
ALL_TOOLS = ToolAccess(enabled=True, allowed=None)


def _ids(values) -> frozenset[str]:  # noqa: ANN001
    return frozenset(str(v) for v in values)


class AclService:
    """Store-backed permission checks, scoped per channel account."""

    def __init__(self, store: Store) -> None:
        self.store = store

    def _dynamic_role(self, account_tag: str, sender_id: str) -> Role | None:
        return Role.from_acl(self.store.get_acl_role(account_tag, sender_id))

    def _evaluate_once(
        self,
        account: TelegramAccount,
        *,
        sender_id: str,
        chat_id: str,
        is_private: bool,
        mentioned: bool,
    ) -> PermissionDecision:
        return PermissionEvaluator.evaluate(
            is_private=is_private,
            sender_id=sender_id,
            chat_id=chat_id,
            mentioned=mentioned,
            group_mode=account.group_mode,
            admins=_ids(account.admins),
            users=_ids(account.users),
            readonly=_ids(account.readonly),
            dynamic_role=self._dynamic_role(account.account_tag, sender_id),
            allowed_chats=_ids(account.allowed_chats) if account.allowed_chats is not None else None,
        )

    def evaluate(
        self,
        account: TelegramAccount,
        *,
        sender_id: str,
        chat_id: str,
        is_private: bool,
        mentioned: bool,
    ) -> PermissionDecision:
        decision = self._evaluate_once(
            account, sender_id=sender_id, chat_id=chat_id, is_private=is_private, mentioned=mentioned
        )
        if decision.allowed or not is_private or not account.auto_register_users:
            return decision

        inserted = self.store.register_user_if_absent(account.account_tag, sender_id, AclRole.user)
        if inserted:
            logger.info(
                "Auto-registered user %s",
                sender_id,
                extra={"account_tag": account.account_tag, "event": "acl_auto_register"},
            )
        decision = self._evaluate_once(
            account, sender_id=sender_id, chat_id=chat_id, is_private=is_private, mentioned=mentioned
        )
        decision.auto_registered = inserted
        return decision

    def current_role(self, account: TelegramAccount, sender_id: str) -> Role:
        """Role of the sender right now, independent of chat kind."""
        role, _ = PermissionEvaluator.base_role(
            sender_id=sender_id,
            chat_id=sender_id,
            admins=_ids(account.admins),
            users=_ids(account.users),
            readonly=_ids(account.readonly),
            dynamic_role=self._dynamic_role(account.account_tag, sender_id),
            allowed_chats=_ids(account.allowed_chats) if account.allowed_chats is not None else None,
        )
        return role

    def require_admin(self, account: TelegramAccount, sender_id: str) -> None:
        if self.current_role(account, sender_id) != Role.admin:
            logger.info(
                "Admin-only operation refused for %s",
                sender_id,
                extra={"account_tag": account.account_tag, "event": "admin_check_failed"},
            )
            raise PermissionDenied("admin role required")

    # ── ACL mutations (admin only, re-checked here) ────────────────────────

    def list_entries(self, account: TelegramAccount, actor_id: str) -> dict[str, list[str]]:
        self.require_admin(account, actor_id)
        dynamic = self.store.get_acl(account.account_tag)
        return {
            "admins": sorted(_ids(account.admins) | {u for u, r in dynamic.items() if r == AclRole.admin}),
            "users": sorted(_ids(account.users) | {u for u, r in dynamic.items() if r == AclRole.user}),
            "readonly": sorted(_ids(account.readonly) | {u for u, r in dynamic.items() if r == AclRole.readonly}),
        }

    def set_role(self, account: TelegramAccount, actor_id: str, target_id: str, role: AclRole) -> None:
        self.require_admin(account, actor_id)
        if target_id in _ids(account.admins) and role != AclRole.admin:
            raise PermissionDenied(f"{target_id} is an admin in the static config")
        self.store.set_acl_role(account.account_tag, target_id, role)
        logger.info(
            "ACL %s -> %s by %s",
            target_id,
            role.value,
            actor_id,
            extra={"account_tag": account.account_tag, "event": "acl_set"},
        )

    def remove(self, account: TelegramAccount, actor_id: str, target_id: str) -> bool:
        self.require_admin(account, actor_id)
        if target_id in _ids(account.admins) | _ids(account.users) | _ids(account.readonly):
            raise PermissionDenied(f"{target_id} is listed in the static config")
        removed = self.store.remove_acl_entry(account.account_tag, target_id)
        if removed:
            logger.info(
                "ACL entry %s removed by %s",
                target_id,
                actor_id,
                extra={"account_tag": account.account_tag, "event": "acl_remove"},
            )
        return removed

    # ── Tool policy ────────────────────────────────────────────────────────

    def effective_tool_policy(self, account: TelegramAccount) -> tuple[UserToolsMode, frozenset[str]]:
        override = self.store.get_tool_policy(account.account_tag)
        mode = account.user_tools_mode
        allowed = frozenset(account.user_allowed_tools)
        if override is not None:
            if override.user_tools_mode:
                mode = UserToolsMode(override.user_tools_mode)
            if override.user_allowed_tools or override.user_tools_mode:
                allowed = frozenset(override.user_allowed_tools)
        return mode, allowed

    def tool_access(self, account: TelegramAccount | None, role: Role) -> ToolAccess:
        if role == Role.admin:
            return ALL_TOOLS
        if role != Role.user or account is None:
            return NO_TOOLS
        mode, allowed = self.effective_tool_policy(account)
        if mode != UserToolsMode.selected:
            return NO_TOOLS
        return ToolAccess(enabled=True, allowed=allowed)

    def update_tool_policy(
        self,
        account: TelegramAccount,
        actor_id: str,
        *,
        mode: UserToolsMode | None = None,
        allow: str | None = None,
        deny: str | None = None,
        clear: bool = False,
    ) -> tuple[UserToolsMode, frozenset[str]]:
        self.require_admin(account, actor_id)
        current_mode, allowed = self.effective_tool_policy(account)
        tools = set(allowed)
        if clear:
            tools.clear()
        if allow:
            tools.add(allow)
        if deny:
            tools.discard(deny)
        self.store.set_tool_policy(
            account.account_tag,
            user_tools_mode=(mode or current_mode).value,
            user_allowed_tools=sorted(tools),
        )
        return self.effective_tool_policy(account)

    # ── Read-only secondary channels ───────────────────────────────────────

    @staticmethod
    def secondary_sender_allowed(channel: ForwardingConfig, sender: str) -> bool:
        listed = channel.allowed_senders | channel.admins | channel.users
        if not listed:
            return True
        return sender in listed
