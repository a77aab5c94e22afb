"""
CronScheduler — persistent, account-scoped reminders.

Jobs live in the ``cron_jobs`` table. ``tick()`` fires every enabled job whose
``next_run`` has passed; an asyncio lock serialises ticks against add/cancel
so a job can never fire while it is being cancelled.

Firing semantics:
  - one-shot jobs are disabled after a successful delivery;
  - recurring jobs advance ``next_run`` via their cron expression;
  - a failed delivery leaves the job due so the next tick retries it, until
    ``MAX_CONSECUTIVE_FAILURES`` in a row disable the job and keep the error.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from masix.monitoring.metrics import CRON_FIRED
from masix.persistence.models import DEFAULT_ACCOUNT_TAG
from masix.persistence.store import CronJobRecord, NewCronJob, Store
from masix.services.cron_parser import ScheduleParseError, ScheduleParser, next_fire

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_FAILURES = 5
DELIVERABLE_CHANNELS = frozenset({"telegram"})

Deliverer = Callable[[CronJobRecord], Awaitable[None]]


class CronJobNotFound(LookupError):
    """No enabled job with that id in the caller's scope."""


@dataclass
class TickReport:
    fired: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    disabled: list[int] = field(default_factory=list)


class CronScheduler:
    def __init__(
        self,
        store: Store,
        parser: ScheduleParser,
        *,
        deliver: Deliverer | None = None,
        tick_seconds: float = 30.0,
        max_failures: int = MAX_CONSECUTIVE_FAILURES,
    ) -> None:
        self.store = store
        self.parser = parser
        self._deliver = deliver
        self.tick_seconds = tick_seconds
        self.max_failures = max_failures
        self._lock = asyncio.Lock()
        self._stop = asyncio.Event()

    def set_deliverer(self, deliver: Deliverer) -> None:
        self._deliver = deliver

    @property
    def timezone(self) -> ZoneInfo:
        return self.parser.timezone

    async def add(
        self,
        text: str,
        account_tag: str,
        recipient: str,
        *,
        channel: str = "telegram",
        created_by: str | None = None,
        now: datetime | None = None,
    ) -> int:
        """Parse ``text`` and persist a job. ScheduleParseError / PersistenceError propagate."""
        parsed = self.parser.parse(text, channel=channel, recipient=recipient, now=now)
        if parsed.channel not in DELIVERABLE_CHANNELS:
            raise ScheduleParseError(f"reminders cannot be delivered over {parsed.channel}; only telegram is supported")
        async with self._lock:
            job_id = self.store.create_cron_job(
                NewCronJob(
                    created_by=created_by or recipient,
                    account_tag=account_tag or DEFAULT_ACCOUNT_TAG,
                    channel=parsed.channel,
                    recipient=parsed.recipient,
                    message=parsed.message,
                    schedule=parsed.schedule,
                    recurring=parsed.recurring,
                    timezone=self.timezone.key,
                    next_run=parsed.next_run,
                )
            )
        logger.info(
            "Cron job %d scheduled for %s (%s)",
            job_id,
            parsed.next_run.isoformat(),
            "recurring" if parsed.recurring else "one-shot",
            extra={"account_tag": account_tag, "event": "cron_add"},
        )
        return job_id

    async def list_jobs(self, account_tag: str, recipient: str | None = None) -> list[CronJobRecord]:
        return self.store.list_cron_jobs(account_tag, recipient)

    async def cancel(self, job_id: int, account_tag: str, recipient: str | None = None) -> None:
        async with self._lock:
            if not self.store.disable_cron_job_scoped(job_id, account_tag, recipient):
                raise CronJobNotFound(f"cron job {job_id} not found")
        logger.info("Cron job %d cancelled", job_id, extra={"account_tag": account_tag, "event": "cron_cancel"})

    async def tick(self, now: datetime | None = None) -> TickReport:
        now = now or datetime.now(timezone.utc)
        report = TickReport()
        async with self._lock:
            for job in self.store.due_cron_jobs(now):
                await self._fire(job, now, report)
        return report

    async def _fire(self, job: CronJobRecord, now: datetime, report: TickReport) -> None:
        if self._deliver is None:
            logger.warning("Cron job %d is due but no deliverer is configured", job.id)
            return
        try:
            await self._deliver(job)
        except Exception as exc:
            CRON_FIRED.labels(outcome="failed").inc()
            count = self.store.record_cron_failure(job.id, str(exc), max_failures=self.max_failures)
            report.failed.append(job.id)
            if count >= self.max_failures:
                report.disabled.append(job.id)
                logger.error(
                    "Cron job %d disabled after %d consecutive delivery failures: %s",
                    job.id,
                    count,
                    exc,
                    extra={"account_tag": job.account_tag, "event": "cron_disabled"},
                )
            else:
                logger.warning(
                    "Cron job %d delivery failed (%d/%d), retrying next tick: %s",
                    job.id,
                    count,
                    self.max_failures,
                    exc,
                    extra={"account_tag": job.account_tag, "event": "cron_delivery_failed"},
                )
            return

        next_run = None
        if job.recurring:
            anchor = max(now, job.next_run) if job.next_run else now
            next_run = next_fire(job.schedule, ZoneInfo(job.timezone), anchor)
        self.store.mark_cron_fired(job.id, now, next_run)
        CRON_FIRED.labels(outcome="ok").inc()
        report.fired.append(job.id)
        logger.info(
            "Cron job %d fired%s",
            job.id,
            f", next run {next_run.isoformat()}" if next_run else "",
            extra={"account_tag": job.account_tag, "event": "cron_fired"},
        )

    async def run(self) -> None:
        logger.info("Cron scheduler started (tick=%ss)", self.tick_seconds)
        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception as exc:
                logger.error("Cron tick failed: %s", exc, exc_info=True)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Cron scheduler stopped")

    def stop(self) -> None:
        self._stop.set()
