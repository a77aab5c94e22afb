"""
Natural-language schedule parsing (Italian and English).

Supported phrases:
  domani alle 9            / tomorrow at 9:30
  tra 2 ore                / in 30 minutes
  ogni lunedì alle 9       / every monday at 9      (recurring)
  ogni giorno alle 8       / every day at 8         (recurring)
  il 1 marzo alle 15       / on 1 march at 15

The reminder text is the first quoted substring. Anything that does not match
one of the phrases above, or matches with an impossible hour/date, raises
``ScheduleParseError``; nothing is guessed.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from croniter import croniter


class ScheduleParseError(ValueError):
    pass


@dataclass(frozen=True)
class ParsedSchedule:
    next_run: datetime
    schedule: str
    recurring: bool
    message: str
    channel: str
    recipient: str


_WEEKDAYS = {
    "domenica": "0", "sunday": "0",
    "lunedì": "1", "lunedi": "1", "monday": "1",
    "martedì": "2", "martedi": "2", "tuesday": "2",
    "mercoledì": "3", "mercoledi": "3", "wednesday": "3",
    "giovedì": "4", "giovedi": "4", "thursday": "4",
    "venerdì": "5", "venerdi": "5", "friday": "5",
    "sabato": "6", "saturday": "6",
    "giorno": "*", "day": "*",
}

_MONTHS = {
    "gennaio": 1, "january": 1,
    "febbraio": 2, "february": 2,
    "marzo": 3, "march": 3,
    "aprile": 4, "april": 4,
    "maggio": 5, "may": 5,
    "giugno": 6, "june": 6,
    "luglio": 7, "july": 7,
    "agosto": 8, "august": 8,
    "settembre": 9, "september": 9,
    "ottobre": 10, "october": 10,
    "novembre": 11, "november": 11,
    "dicembre": 12, "december": 12,
}

_UNITS = {
    "minuto": "minutes", "minuti": "minutes", "minute": "minutes", "minutes": "minutes", "min": "minutes",
    "ora": "hours", "ore": "hours", "hour": "hours", "hours": "hours",
    "giorno": "days", "giorni": "days", "day": "days", "days": "days",
}

_QUOTED_RE = re.compile(r'"([^"]+)"|“([^”]+)”|«([^»]+)»')
_AT_RE = re.compile(r"\b(?:alle|all'|at)\s*(?:ore\s+)?(\d{1,2})(?:[:.](\d{1,2}))?\b")
_TOMORROW_RE = re.compile(r"\b(?:domani|tomorrow)\b")
_RELATIVE_RE = re.compile(r"\b(?:tra|fra|in)\s+(\d+)\s*([a-zì]+)\b")
_EVERY_RE = re.compile(r"\b(?:ogni|every)\s+([a-zì]+)\b")
_DATE_RE = re.compile(r"\b(?:il\s+|on\s+)?(\d{1,2})\s+([a-z]+)\b")
_TARGET_RE = re.compile(r"\b(sms|telegram|whatsapp)\s+(?:a|al|allo|alla|ai|to)\s+(\S+)", re.IGNORECASE)


class ScheduleParser:
    def __init__(self, timezone: ZoneInfo) -> None:
        self.timezone = timezone

    def parse(
        self,
        text: str,
        *,
        channel: str,
        recipient: str,
        now: datetime | None = None,
    ) -> ParsedSchedule:
        if not text or not text.strip():
            raise ScheduleParseError("empty schedule request")
        now_local = (now or datetime.now(self.timezone)).astimezone(self.timezone)

        message, rest = self._extract_message(text)
        lowered = rest.lower()

        target = _TARGET_RE.search(rest)
        if target:
            channel = target.group(1).lower()
            recipient = target.group(2).rstrip(",.;")
            lowered = lowered.replace(target.group(0).lower(), " ")

        next_run, schedule, recurring = self._parse_when(lowered, now_local)
        return ParsedSchedule(
            next_run=next_run,
            schedule=schedule,
            recurring=recurring,
            message=message,
            channel=channel,
            recipient=recipient,
        )

    @staticmethod
    def _extract_message(text: str) -> tuple[str, str]:
        match = _QUOTED_RE.search(text)
        if not match:
            return text.strip(), text
        message = next(group for group in match.groups() if group is not None).strip()
        rest = text[: match.start()] + " " + text[match.end():]
        return message, rest

    def _time_of_day(self, text: str) -> tuple[int, int]:
        match = _AT_RE.search(text)
        if not match:
            raise ScheduleParseError("missing time of day (e.g. 'alle 9' / 'at 9:30')")
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        if hour > 23 or minute > 59:
            raise ScheduleParseError(f"invalid time {hour}:{minute:02d}")
        return hour, minute

    def _at(self, day: date, hour: int, minute: int) -> datetime:
        return datetime(day.year, day.month, day.day, hour, minute, tzinfo=self.timezone)

    def _parse_when(self, text: str, now: datetime) -> tuple[datetime, str, bool]:
        if _TOMORROW_RE.search(text):
            hour, minute = self._time_of_day(text)
            fire = self._at(now.date() + timedelta(days=1), hour, minute)
            return fire, fire.isoformat(), False

        relative = _RELATIVE_RE.search(text)
        if relative and relative.group(2) in _UNITS:
            amount = int(relative.group(1))
            if amount <= 0:
                raise ScheduleParseError("relative delay must be positive")
            fire = now + timedelta(**{_UNITS[relative.group(2)]: amount})
            return fire, fire.isoformat(), False

        every = _EVERY_RE.search(text)
        if every:
            word = every.group(1)
            if word not in _WEEKDAYS:
                raise ScheduleParseError(f"unknown weekday '{word}'")
            hour, minute = self._time_of_day(text)
            expression = f"{minute} {hour} * * {_WEEKDAYS[word]}"
            return next_fire(expression, self.timezone, now), expression, True

        for match in _DATE_RE.finditer(text):
            month = _MONTHS.get(match.group(2))
            if month is None:
                continue
            day_of_month = int(match.group(1))
            hour, minute = self._time_of_day(text)
            fire = self._calendar_fire(now, month, day_of_month, hour, minute)
            return fire, fire.isoformat(), False

        raise ScheduleParseError("could not recognise a date or time in the request")

    def _calendar_fire(self, now: datetime, month: int, day_of_month: int, hour: int, minute: int) -> datetime:
        for year in (now.year, now.year + 1):
            try:
                candidate = self._at(date(year, month, day_of_month), hour, minute)
            except ValueError as exc:
                if year == now.year:
                    # 29 February may exist next year
                    continue
                raise ScheduleParseError(f"invalid date {day_of_month}/{month}") from exc
            if candidate > now:
                return candidate
        raise ScheduleParseError(f"invalid date {day_of_month}/{month}")


def next_fire(expression: str, timezone: ZoneInfo, after: datetime) -> datetime:
    """Next occurrence of a cron ``expression`` strictly after ``after``, in ``timezone``."""
    base = after.astimezone(timezone)
    return croniter(expression, base).get_next(datetime)
