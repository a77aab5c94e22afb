"""
Store — narrow typed operations over the shared database.

Every public method opens its own session and commits (or rolls back) before
returning, so each mutation is individually atomic and safe to call from any
account task. Nothing here spans more than one table in a transaction.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TypeVar

from sqlalchemy import Engine, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from masix.persistence.database import Base, build_engine, build_session_factory
from masix.persistence.models import (
    DEFAULT_ACCOUNT_TAG,
    AclEntry,
    AclRole,
    AclSettings,
    ChannelOffset,
    CronJob,
    InboundEvent,
    now_utc,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PersistenceError(RuntimeError):
    """A store operation failed; the caller must not assume it took effect."""


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything is written in UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class CronJobRecord:
    id: int
    created_by: str
    account_tag: str
    channel: str
    recipient: str
    message: str
    schedule: str
    recurring: bool
    timezone: str
    enabled: bool
    next_run: datetime | None
    last_run: datetime | None
    failure_count: int
    last_error: str | None
    created_at: datetime | None

    @classmethod
    def from_row(cls, row: CronJob) -> "CronJobRecord":
        return cls(
            id=row.id,
            created_by=row.created_by,
            account_tag=row.account_tag or DEFAULT_ACCOUNT_TAG,
            channel=row.channel,
            recipient=row.recipient,
            message=row.message,
            schedule=row.schedule,
            recurring=bool(row.recurring),
            timezone=row.timezone or "UTC",
            enabled=bool(row.enabled),
            next_run=as_utc(row.next_run),
            last_run=as_utc(row.last_run),
            failure_count=row.failure_count or 0,
            last_error=row.last_error,
            created_at=as_utc(row.created_at),
        )


@dataclass(frozen=True)
class NewCronJob:
    created_by: str
    account_tag: str
    channel: str
    recipient: str
    message: str
    schedule: str
    recurring: bool
    timezone: str
    next_run: datetime


@dataclass(frozen=True)
class ToolPolicyOverride:
    user_tools_mode: str | None
    user_allowed_tools: tuple[str, ...]


class Store:
    def __init__(self, session_factory: sessionmaker[Session], engine: Engine | None = None) -> None:
        self._session_factory = session_factory
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str, *, create_schema: bool = False) -> "Store":
        engine = build_engine(database_url)
        if create_schema:
            Base.metadata.create_all(bind=engine)
        return cls(build_session_factory(engine), engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except IntegrityError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError(str(exc)) from exc
        finally:
            db.close()

    def _run(self, fn: Callable[[Session], T]) -> T:
        try:
            with self._session() as db:
                return fn(db)
        except IntegrityError as exc:
            raise PersistenceError(str(exc)) from exc

    # ── Offsets ────────────────────────────────────────────────────────────

    def get_offset(self, channel: str, account_tag: str) -> int | None:
        def _op(db: Session) -> int | None:
            return db.scalar(
                select(ChannelOffset.offset_value).where(
                    ChannelOffset.channel == channel,
                    ChannelOffset.account_tag == account_tag,
                )
            )

        return self._run(_op)

    def save_offset(self, channel: str, account_tag: str, offset: int) -> None:
        """Advance the cursor; never moves it backwards."""

        def _advance(db: Session) -> int:
            result = db.execute(
                update(ChannelOffset)
                .where(
                    ChannelOffset.channel == channel,
                    ChannelOffset.account_tag == account_tag,
                    ChannelOffset.offset_value < offset,
                )
                .values(offset_value=offset, updated_at=now_utc())
            )
            return result.rowcount

        if self._run(_advance):
            return
        if self.get_offset(channel, account_tag) is not None:
            return
        try:
            with self._session() as db:
                db.add(ChannelOffset(channel=channel, account_tag=account_tag, offset_value=offset))
        except IntegrityError:
            # Another task inserted the row first.
            self._run(_advance)

    # ── Cron jobs ──────────────────────────────────────────────────────────

    def create_cron_job(self, job: NewCronJob) -> int:
        def _op(db: Session) -> int:
            row = CronJob(
                created_by=job.created_by,
                account_tag=job.account_tag or DEFAULT_ACCOUNT_TAG,
                channel=job.channel,
                recipient=job.recipient,
                message=job.message,
                schedule=job.schedule,
                recurring=job.recurring,
                timezone=job.timezone,
                enabled=True,
                next_run=job.next_run.astimezone(timezone.utc),
                failure_count=0,
            )
            db.add(row)
            db.flush()
            return row.id

        return self._run(_op)

    def get_cron_job(self, job_id: int) -> CronJobRecord | None:
        def _op(db: Session) -> CronJobRecord | None:
            row = db.get(CronJob, job_id)
            return CronJobRecord.from_row(row) if row else None

        return self._run(_op)

    def list_cron_jobs(
        self,
        account_tag: str,
        recipient: str | None = None,
        *,
        include_disabled: bool = False,
    ) -> list[CronJobRecord]:
        def _op(db: Session) -> list[CronJobRecord]:
            query = select(CronJob).where(CronJob.account_tag == account_tag)
            if recipient is not None:
                query = query.where(CronJob.recipient == recipient)
            if not include_disabled:
                query = query.where(CronJob.enabled.is_(True))
            query = query.order_by(CronJob.next_run.asc(), CronJob.id.asc())
            return [CronJobRecord.from_row(row) for row in db.scalars(query)]

        return self._run(_op)

    def due_cron_jobs(self, now: datetime) -> list[CronJobRecord]:
        def _op(db: Session) -> list[CronJobRecord]:
            query = (
                select(CronJob)
                .where(CronJob.enabled.is_(True), CronJob.next_run <= as_utc(now))
                .order_by(CronJob.next_run.asc(), CronJob.id.asc())
            )
            return [CronJobRecord.from_row(row) for row in db.scalars(query)]

        return self._run(_op)

    def disable_cron_job_scoped(self, job_id: int, account_tag: str, recipient: str | None = None) -> bool:
        """Soft-disable an active job owned by ``account_tag``. False when no active job matches."""

        def _op(db: Session) -> bool:
            query = update(CronJob).where(
                CronJob.id == job_id,
                CronJob.account_tag == account_tag,
                CronJob.enabled.is_(True),
            )
            if recipient is not None:
                query = query.where(CronJob.recipient == recipient)
            result = db.execute(query.values(enabled=False))
            return result.rowcount > 0

        return self._run(_op)

    def mark_cron_fired(self, job_id: int, fired_at: datetime, next_run: datetime | None) -> None:
        """Record a successful delivery: advance a recurring job, disable a one-shot one."""

        def _op(db: Session) -> None:
            values: dict = {
                "last_run": fired_at.astimezone(timezone.utc),
                "failure_count": 0,
                "last_error": None,
            }
            if next_run is None:
                values["enabled"] = False
            else:
                values["next_run"] = next_run.astimezone(timezone.utc)
            db.execute(update(CronJob).where(CronJob.id == job_id).values(**values))

        self._run(_op)

    def record_cron_failure(self, job_id: int, error: str, *, max_failures: int) -> int:
        """Count one failed delivery; disables the job once ``max_failures`` is reached."""

        def _op(db: Session) -> int:
            row = db.get(CronJob, job_id)
            if row is None:
                return 0
            row.failure_count = (row.failure_count or 0) + 1
            row.last_error = error[:1000]
            if row.failure_count >= max_failures:
                row.enabled = False
            return row.failure_count

        return self._run(_op)

    # ── ACL ────────────────────────────────────────────────────────────────

    def get_acl(self, account_tag: str) -> dict[str, AclRole]:
        def _op(db: Session) -> dict[str, AclRole]:
            rows = db.scalars(select(AclEntry).where(AclEntry.account_tag == account_tag))
            return {row.user_id: AclRole(row.role) for row in rows}

        return self._run(_op)

    def get_acl_role(self, account_tag: str, user_id: str) -> AclRole | None:
        def _op(db: Session) -> AclRole | None:
            role = db.scalar(
                select(AclEntry.role).where(AclEntry.account_tag == account_tag, AclEntry.user_id == user_id)
            )
            return AclRole(role) if role else None

        return self._run(_op)

    def set_acl_role(self, account_tag: str, user_id: str, role: AclRole) -> None:
        def _op(db: Session) -> None:
            row = db.scalar(
                select(AclEntry).where(AclEntry.account_tag == account_tag, AclEntry.user_id == user_id)
            )
            if row is None:
                db.add(AclEntry(account_tag=account_tag, user_id=user_id, role=role.value))
            else:
                row.role = role.value

        self._run(_op)

    def remove_acl_entry(self, account_tag: str, user_id: str) -> bool:
        def _op(db: Session) -> bool:
            row = db.scalar(
                select(AclEntry).where(AclEntry.account_tag == account_tag, AclEntry.user_id == user_id)
            )
            if row is None:
                return False
            db.delete(row)
            return True

        return self._run(_op)

    def register_user_if_absent(self, account_tag: str, user_id: str, role: AclRole = AclRole.user) -> bool:
        """Insert-or-nothing. True only for the call that actually created the entry."""
        try:
            with self._session() as db:
                exists = db.scalar(
                    select(AclEntry.id).where(AclEntry.account_tag == account_tag, AclEntry.user_id == user_id)
                )
                if exists is not None:
                    return False
                db.add(AclEntry(account_tag=account_tag, user_id=user_id, role=role.value))
                db.flush()
        except IntegrityError:
            return False
        return True

    def get_tool_policy(self, account_tag: str) -> ToolPolicyOverride | None:
        def _op(db: Session) -> ToolPolicyOverride | None:
            row = db.get(AclSettings, account_tag)
            if row is None:
                return None
            return ToolPolicyOverride(
                user_tools_mode=row.user_tools_mode,
                user_allowed_tools=tuple(row.user_allowed_tools or ()),
            )

        return self._run(_op)

    def set_tool_policy(
        self,
        account_tag: str,
        *,
        user_tools_mode: str | None = None,
        user_allowed_tools: list[str] | None = None,
    ) -> ToolPolicyOverride:
        def _op(db: Session) -> ToolPolicyOverride:
            row = db.get(AclSettings, account_tag)
            if row is None:
                row = AclSettings(account_tag=account_tag, user_allowed_tools=[])
                db.add(row)
            if user_tools_mode is not None:
                row.user_tools_mode = user_tools_mode
            if user_allowed_tools is not None:
                row.user_allowed_tools = sorted(set(user_allowed_tools))
            return ToolPolicyOverride(
                user_tools_mode=row.user_tools_mode,
                user_allowed_tools=tuple(row.user_allowed_tools or ()),
            )

        return self._run(_op)

    # ── Audit ──────────────────────────────────────────────────────────────

    def record_inbound_event(
        self,
        *,
        channel: str,
        account_tag: str,
        chat_id: str,
        sender: str,
        content: str,
        message_id: str | None = None,
    ) -> None:
        def _op(db: Session) -> None:
            db.add(
                InboundEvent(
                    channel=channel,
                    account_tag=account_tag,
                    message_id=message_id,
                    chat_id=chat_id,
                    sender=sender,
                    content=content[:4000],
                )
            )

        self._run(_op)
