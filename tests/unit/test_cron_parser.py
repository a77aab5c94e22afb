from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from masix.services.cron_parser import ScheduleParseError, ScheduleParser, next_fire

ROME = ZoneInfo("Europe/Rome")
# a Wednesday afternoon
NOW = datetime(2026, 10, 14, 15, 0, tzinfo=ROME)


@pytest.fixture()
def parser():
    return ScheduleParser(ROME)


def _parse(parser, text):
    return parser.parse(text, channel="telegram", recipient="42", now=NOW)


def test_tomorrow_at_hour_with_quoted_message(parser):
    parsed = _parse(parser, 'domani alle 9 "Team sync"')
    assert parsed.next_run == datetime(2026, 10, 15, 9, 0, tzinfo=ROME)
    assert parsed.message == "Team sync"
    assert parsed.recurring is False
    assert (parsed.channel, parsed.recipient) == ("telegram", "42")


def test_english_tomorrow_with_minutes(parser):
    parsed = _parse(parser, 'tomorrow at 9:30 "Dentist"')
    assert parsed.next_run == datetime(2026, 10, 15, 9, 30, tzinfo=ROME)


def test_relative_delay(parser):
    assert _parse(parser, 'tra 2 ore "Pasta"').next_run == NOW + timedelta(hours=2)
    assert _parse(parser, 'in 30 minutes "Tea"').next_run == NOW + timedelta(minutes=30)


def test_weekly_recurring(parser):
    parsed = _parse(parser, 'ogni lunedì alle 9 "Standup"')
    assert parsed.recurring is True
    assert parsed.schedule == "0 9 * * 1"
    assert parsed.next_run == datetime(2026, 10, 19, 9, 0, tzinfo=ROME)


def test_daily_recurring(parser):
    parsed = _parse(parser, 'every day at 8 "Pills"')
    assert parsed.schedule == "0 8 * * *"
    assert parsed.next_run == datetime(2026, 10, 15, 8, 0, tzinfo=ROME)


def test_calendar_date_rolls_to_next_year_when_past(parser):
    parsed = _parse(parser, 'il 1 marzo alle 15 "Taxes"')
    assert parsed.next_run == datetime(2027, 3, 1, 15, 0, tzinfo=ROME)
    assert _parse(parser, 'on 20 december at 10 "Gifts"').next_run == datetime(2026, 12, 20, 10, 0, tzinfo=ROME)


def test_channel_target_overrides_the_default(parser):
    parsed = _parse(parser, 'domani alle 9 "Call mum" sms a +393331234567')
    assert parsed.channel == "sms"
    assert parsed.recipient == "+393331234567"


@pytest.mark.parametrize(
    "text",
    [
        "",
        '"only a message"',
        'domani "no time"',
        'domani alle 25 "bad hour"',
        'tra 0 minuti "zero"',
        'ogni mese alle 9 "unknown unit"',
        'il 31 febbraio alle 9 "no such day"',
    ],
)
def test_unparseable_requests_are_rejected(parser, text):
    with pytest.raises(ScheduleParseError):
        _parse(parser, text)


def test_next_fire_is_strictly_after_anchor():
    anchor = datetime(2026, 10, 15, 8, 0, tzinfo=ROME)
    assert next_fire("0 8 * * *", ROME, anchor) == datetime(2026, 10, 16, 8, 0, tzinfo=ROME)
