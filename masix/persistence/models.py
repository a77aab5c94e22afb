import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from masix.persistence.database import Base

DEFAULT_ACCOUNT_TAG = "__default__"


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class AclRole(str, enum.Enum):
    admin = "admin"
    user = "user"
    readonly = "readonly"


class CronJob(Base):
    __tablename__ = "cron_jobs"
    __table_args__ = (
        Index("idx_cron_jobs_enabled_next_run_account", "enabled", "next_run", "account_tag"),
        Index("idx_cron_jobs_account_enabled", "account_tag", "enabled"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    account_tag: Mapped[str] = mapped_column(
        String(128), nullable=False, default=DEFAULT_ACCOUNT_TAG, server_default=DEFAULT_ACCOUNT_TAG
    )
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    recipient: Mapped[str] = mapped_column(String(128), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    schedule: Mapped[str] = mapped_column(String(255), nullable=False)
    recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    next_run: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_run: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)


class ChannelOffset(Base):
    __tablename__ = "channel_offsets"
    __table_args__ = (UniqueConstraint("channel", "account_tag", name="uq_channel_offsets_channel_account"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    account_tag: Mapped[str] = mapped_column(String(128), nullable=False, default=DEFAULT_ACCOUNT_TAG)
    offset_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, onupdate=now_utc)


class AclEntry(Base):
    __tablename__ = "acl_entries"
    __table_args__ = (UniqueConstraint("account_tag", "user_id", name="uq_acl_entries_account_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_tag: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)


class AclSettings(Base):
    __tablename__ = "acl_settings"

    account_tag: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_tools_mode: Mapped[str | None] = mapped_column(String(16), nullable=True)
    user_allowed_tools: Mapped[list] = mapped_column(JSON, default=list)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, onupdate=now_utc)


class InboundEvent(Base):
    __tablename__ = "inbound_events"
    __table_args__ = (Index("ix_inbound_events_account_chat", "channel", "account_tag", "chat_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    account_tag: Mapped[str] = mapped_column(String(128), nullable=False)
    message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    chat_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sender: Mapped[str] = mapped_column(String(128), nullable=False)
    content: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)
