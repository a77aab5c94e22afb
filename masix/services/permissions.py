"""
Permission evaluation for channel accounts.

``PermissionEvaluator.evaluate`` is a pure function of the account's static
lists, the sender's dynamic ACL role, the chat kind and the mention flag.
A user id listed in ``allowed_chats`` counts as a User; which chats reach the
evaluator at all is decided by the channel adapter.
Roles are ordered Admin > User > Readonly > Denied; a higher role carries
every capability of the lower ones.
"""
from __future__ import annotations

import enum
from collections.abc import Collection
from dataclasses import dataclass

from masix.config.loader import GroupMode
from masix.persistence.models import AclRole


class Role(str, enum.Enum):
    admin = "admin"
    user = "user"
    readonly = "readonly"
    denied = "denied"

    @property
    def rank(self) -> int:
        return _RANK[self]

    def at_least(self, other: "Role") -> bool:
        return self.rank >= other.rank

    @classmethod
    def from_acl(cls, role: AclRole | None) -> "Role | None":
        if role is None:
            return None
        return cls(role.value)


_RANK = {Role.denied: 0, Role.readonly: 1, Role.user: 2, Role.admin: 3}


class PermissionDenied(PermissionError):
    """Raised at the point of use when the sender's current role is insufficient."""


@dataclass
class PermissionDecision:
    role: Role
    reason: str
    auto_registered: bool = False

    @property
    def allowed(self) -> bool:
        return self.role != Role.denied

    @property
    def can_use_commands(self) -> bool:
        return self.role.at_least(Role.readonly)

    @property
    def can_mutate(self) -> bool:
        return self.role.at_least(Role.user)


def mentions_bot(text: str | None, bot_name: str | None) -> bool:
    if not text or not bot_name:
        return False
    handle = bot_name if bot_name.startswith("@") else f"@{bot_name}"
    return handle.lower() in text.lower()


class PermissionEvaluator:
    @staticmethod
    def base_role(
        *,
        sender_id: str,
        chat_id: str,
        admins: Collection[str],
        users: Collection[str],
        readonly: Collection[str],
        dynamic_role: Role | None = None,
        allowed_chats: Collection[str] | None = None,
    ) -> tuple[Role, str]:
        if sender_id in admins or dynamic_role == Role.admin:
            return Role.admin, "admin"
        if sender_id in users or dynamic_role == Role.user:
            return Role.user, "user"
        if sender_id in readonly or dynamic_role == Role.readonly:
            return Role.readonly, "readonly"
        if allowed_chats is not None and sender_id in allowed_chats:
            return Role.user, "allowed_chat"
        return Role.denied, "unknown_sender"

    @staticmethod
    def evaluate(
        *,
        is_private: bool,
        sender_id: str,
        chat_id: str,
        mentioned: bool,
        group_mode: GroupMode,
        admins: Collection[str],
        users: Collection[str],
        readonly: Collection[str] = (),
        dynamic_role: Role | None = None,
        allowed_chats: Collection[str] | None = None,
    ) -> PermissionDecision:
        role, reason = PermissionEvaluator.base_role(
            sender_id=sender_id,
            chat_id=chat_id,
            admins=admins,
            users=users,
            readonly=readonly,
            dynamic_role=dynamic_role,
            allowed_chats=allowed_chats,
        )

        if is_private:
            return PermissionDecision(role=role, reason=reason if role != Role.denied else "not_registered")

        if group_mode == GroupMode.all:
            if role in (Role.admin, Role.readonly):
                return PermissionDecision(role=role, reason=f"group_all:{reason}")
            return PermissionDecision(role=Role.user, reason="group_all")

        if group_mode == GroupMode.users_only:
            if role == Role.denied:
                return PermissionDecision(role=Role.denied, reason="group_users_only")
            return PermissionDecision(role=role, reason=f"group_users_only:{reason}")

        if group_mode == GroupMode.tag_only:
            if not mentioned:
                return PermissionDecision(role=Role.denied, reason="mention_required")
            if role in (Role.admin, Role.readonly):
                return PermissionDecision(role=role, reason=f"group_tag:{reason}")
            return PermissionDecision(role=Role.user, reason="group_tag")

        if group_mode == GroupMode.users_or_tag:
            if role != Role.denied:
                return PermissionDecision(role=role, reason=f"group_listed:{reason}")
            if mentioned:
                return PermissionDecision(role=Role.user, reason="group_tag")
            return PermissionDecision(role=Role.denied, reason="mention_or_listing_required")

        # listen_only: the bot only answers an admin who mentions it
        if mentioned and role == Role.admin:
            return PermissionDecision(role=Role.admin, reason="listen_only_admin_tag")
        return PermissionDecision(role=Role.denied, reason="listen_only")
