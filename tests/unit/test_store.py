from datetime import datetime, timedelta, timezone

from masix.persistence.models import AclRole
from masix.persistence.store import NewCronJob


def _job(account_tag="123", recipient="42", next_run=None, recurring=False):
    return NewCronJob(
        created_by=recipient,
        account_tag=account_tag,
        channel="telegram",
        recipient=recipient,
        message="Team sync",
        schedule="0 9 * * *" if recurring else "2026-10-20T09:00:00+02:00",
        recurring=recurring,
        timezone="Europe/Rome",
        next_run=next_run or datetime(2026, 10, 20, 7, 0, tzinfo=timezone.utc),
    )


def test_offset_roundtrip_and_never_moves_backwards(store):
    assert store.get_offset("telegram", "123") is None
    store.save_offset("telegram", "123", 10)
    store.save_offset("telegram", "123", 7)
    assert store.get_offset("telegram", "123") == 10
    store.save_offset("telegram", "123", 11)
    assert store.get_offset("telegram", "123") == 11


def test_offsets_are_scoped_per_channel_and_account(store):
    store.save_offset("telegram", "123", 5)
    store.save_offset("telegram", "456", 50)
    store.save_offset("sms", "sms", 900)
    assert store.get_offset("telegram", "123") == 5
    assert store.get_offset("telegram", "456") == 50
    assert store.get_offset("sms", "sms") == 900


def test_cron_job_listing_is_scoped_by_account(store):
    own = store.create_cron_job(_job(account_tag="123"))
    store.create_cron_job(_job(account_tag="456"))

    jobs = store.list_cron_jobs("123")
    assert [job.id for job in jobs] == [own]
    assert jobs[0].next_run.tzinfo is not None


def test_scoped_disable_refuses_foreign_jobs(store):
    job_id = store.create_cron_job(_job(account_tag="123", recipient="42"))

    assert store.disable_cron_job_scoped(job_id, "456") is False
    assert store.disable_cron_job_scoped(job_id, "123", "other-chat") is False
    assert store.get_cron_job(job_id).enabled is True

    assert store.disable_cron_job_scoped(job_id, "123", "42") is True
    assert store.get_cron_job(job_id).enabled is False
    assert store.list_cron_jobs("123") == []
    assert len(store.list_cron_jobs("123", include_disabled=True)) == 1


def test_disabling_an_already_disabled_job_reports_nothing_changed(store):
    job_id = store.create_cron_job(_job())

    assert store.disable_cron_job_scoped(job_id, "123") is True
    assert store.disable_cron_job_scoped(job_id, "123") is False


def test_due_jobs_only_include_enabled_and_past(store):
    now = datetime(2026, 10, 20, 12, 0, tzinfo=timezone.utc)
    due = store.create_cron_job(_job(next_run=now - timedelta(minutes=1)))
    store.create_cron_job(_job(next_run=now + timedelta(hours=1)))
    disabled = store.create_cron_job(_job(next_run=now - timedelta(hours=1)))
    store.disable_cron_job_scoped(disabled, "123")

    assert [job.id for job in store.due_cron_jobs(now)] == [due]


def test_due_jobs_compare_instants_across_offsets(store):
    now = datetime(2026, 10, 20, 12, 0, tzinfo=timezone.utc)
    on_time = store.create_cron_job(_job(next_run=now))
    store.create_cron_job(_job(next_run=now + timedelta(seconds=1)))
    rome = timezone(timedelta(hours=2))

    assert [job.id for job in store.due_cron_jobs(now.astimezone(rome))] == [on_time]
    assert store.due_cron_jobs(now - timedelta(minutes=1)) == []


def test_mark_fired_disables_one_shot_and_advances_recurring(store):
    fired_at = datetime(2026, 10, 20, 7, 0, tzinfo=timezone.utc)
    one_shot = store.create_cron_job(_job())
    recurring = store.create_cron_job(_job(recurring=True))

    store.mark_cron_fired(one_shot, fired_at, None)
    store.mark_cron_fired(recurring, fired_at, fired_at + timedelta(days=1))

    assert store.get_cron_job(one_shot).enabled is False
    advanced = store.get_cron_job(recurring)
    assert advanced.enabled is True
    assert advanced.next_run == fired_at + timedelta(days=1)
    assert advanced.last_run == fired_at


def test_failures_disable_the_job_at_the_cap(store):
    job_id = store.create_cron_job(_job())
    counts = [store.record_cron_failure(job_id, "boom", max_failures=3) for _ in range(3)]
    job = store.get_cron_job(job_id)
    assert counts == [1, 2, 3]
    assert job.enabled is False
    assert job.last_error == "boom"


def test_acl_entries_are_per_account(store):
    store.set_acl_role("123", "555", AclRole.user)
    store.set_acl_role("123", "555", AclRole.admin)
    assert store.get_acl_role("123", "555") == AclRole.admin
    assert store.get_acl_role("456", "555") is None
    assert store.get_acl("123") == {"555": AclRole.admin}
    assert store.remove_acl_entry("123", "555") is True
    assert store.remove_acl_entry("123", "555") is False


def test_register_user_if_absent_inserts_once(store):
    assert store.register_user_if_absent("123", "77") is True
    assert store.register_user_if_absent("123", "77") is False
    assert store.get_acl_role("123", "77") == AclRole.user


def test_tool_policy_override(store):
    assert store.get_tool_policy("123") is None
    store.set_tool_policy("123", user_tools_mode="selected", user_allowed_tools=["cron_list", "cron_add", "cron_add"])
    override = store.get_tool_policy("123")
    assert override.user_tools_mode == "selected"
    assert override.user_allowed_tools == ("cron_add", "cron_list")


def test_inbound_events_are_recorded(store):
    from sqlalchemy import select

    from masix.persistence.models import InboundEvent

    store.record_inbound_event(channel="telegram", account_tag="123", chat_id="42", sender="42", content="hi", message_id="9")
    with store._session() as db:
        rows = list(db.scalars(select(InboundEvent)))
    assert len(rows) == 1
    assert rows[0].content == "hi"
