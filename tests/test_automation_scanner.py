from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from tradiedesk.models.automation import AutomationLog
from tradiedesk.models.notification import Notification
from tradiedesk.models.quote import Quote
from tradiedesk.services.automation_service import (
    no_response_matches,
    overdue_invoice_matches,
    overdue_job_matches,
    process_time_based_automations,
    upcoming_job_matches,
)
from tradiedesk.services.automation_storage import SqlAutomationStorage

NOW = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)

QUOTE_FOLLOW_UP = {"type": "no_response", "entityType": "quote", "delayDays": 3}
INVOICE_OVERDUE = {"type": "time_delay", "entityType": "invoice", "delayDays": 7}


class FailingUserStorage(SqlAutomationStorage):
    def __init__(self, db, failing_user_id):
        super().__init__(db)
        self.failing_user_id = failing_user_id

    def get_automations(self, user_id):
        if user_id == self.failing_user_id:
            raise RuntimeError("tenant store unavailable")
        return super().get_automations(user_id)


class FailingSetupStorage(SqlAutomationStorage):
    def get_user(self, user_id):
        raise RuntimeError("user lookup failed")


def _markers(db):
    return db.execute(select(AutomationLog)).scalars().all()


def test_quote_follow_up_sends_once_and_marks_success(db, seed, email_sender):
    user = seed.user(business_name="Dave's Plumbing")
    client = seed.client(user)
    quote = seed.quote(user, client, number="Q-1001", sent_at=NOW - timedelta(days=4))
    automation = seed.automation(
        user,
        trigger=QUOTE_FOLLOW_UP,
        actions=[{"type": "send_email", "template": "quote_follow_up"}],
    )
    storage = SqlAutomationStorage(db)

    summary = process_time_based_automations(storage, email_sender=email_sender, now=NOW)

    assert summary.processed == 1
    assert summary.errors == 0
    assert len(email_sender.sent) == 1
    assert email_sender.sent[0].to == "sarah@example.com"
    markers = _markers(db)
    assert len(markers) == 1
    assert markers[0].automation_id == automation.id
    assert markers[0].entity_type == "quote"
    assert markers[0].entity_id == quote.id
    assert markers[0].result == "success"


def test_second_scan_skips_already_processed_entities(db, seed, email_sender):
    user = seed.user()
    client = seed.client(user)
    seed.quote(user, client, sent_at=NOW - timedelta(days=4))
    seed.automation(user, trigger=QUOTE_FOLLOW_UP, actions=[{"type": "send_email"}])
    storage = SqlAutomationStorage(db)

    first = process_time_based_automations(storage, email_sender=email_sender, now=NOW)
    second = process_time_based_automations(storage, email_sender=email_sender, now=NOW + timedelta(hours=1))

    assert first.processed == 1
    assert second.processed == 0
    assert len(email_sender.sent) == 1
    assert len(_markers(db)) == 1


def test_sent_at_takes_priority_over_created_at():
    quote = {
        "status": "sent",
        "created_at": NOW - timedelta(days=10),
        "sent_at": NOW - timedelta(days=1),
    }

    assert no_response_matches(quote, delay_days=3, now=NOW) is False
    assert no_response_matches({**quote, "sent_at": None}, delay_days=3, now=NOW) is True


def test_no_response_requires_sent_or_viewed_status():
    quote = {"status": "accepted", "sent_at": NOW - timedelta(days=10)}

    assert no_response_matches(quote, delay_days=3, now=NOW) is False
    assert no_response_matches({**quote, "status": "Viewed"}, delay_days=3, now=NOW) is True


def test_negative_delay_matches_jobs_scheduled_exactly_that_many_days_ahead():
    tomorrow = {"status": "scheduled", "scheduled_at": NOW + timedelta(days=1, hours=5)}
    two_days_out = {"status": "scheduled", "scheduled_at": NOW + timedelta(days=2)}

    assert upcoming_job_matches(tomorrow, days_ahead=1, now=NOW) is True
    assert upcoming_job_matches(two_days_out, days_ahead=1, now=NOW) is False
    assert upcoming_job_matches({**tomorrow, "status": "in_progress"}, days_ahead=1, now=NOW) is False


def test_positive_delay_matches_open_jobs_past_their_date():
    job = {"status": "in_progress", "scheduled_at": NOW - timedelta(days=2)}

    assert overdue_job_matches(job, delay_days=1, now=NOW) is True
    assert overdue_job_matches({**job, "status": "done"}, delay_days=1, now=NOW) is False
    assert overdue_job_matches({**job, "scheduled_at": None}, delay_days=1, now=NOW) is False


def test_overdue_invoice_predicate_ignores_paid_and_draft():
    invoice = {"status": "sent", "due_date": NOW - timedelta(days=10)}

    assert overdue_invoice_matches(invoice, delay_days=7, now=NOW) is True
    assert overdue_invoice_matches({**invoice, "status": "paid"}, delay_days=7, now=NOW) is False
    assert overdue_invoice_matches({**invoice, "status": "draft"}, delay_days=7, now=NOW) is False
    assert overdue_invoice_matches(invoice, delay_days=14, now=NOW) is False


def test_day_before_job_reminder_scan(db, seed, email_sender, sms_provider):
    user = seed.user()
    client = seed.client(user)
    tomorrow_job = seed.job(user, client, scheduled_at=NOW + timedelta(days=1))
    seed.job(user, client, title="Later job", scheduled_at=NOW + timedelta(days=2))
    seed.automation(
        user,
        trigger={"type": "time_delay", "entityType": "job", "delayDays": -1},
        actions=[{"type": "send_sms", "message": "See you tomorrow for {job_title}"}],
        template_id="job-scheduled-reminder",
    )

    summary = process_time_based_automations(
        SqlAutomationStorage(db),
        email_sender=email_sender,
        sms_provider=sms_provider,
        now=NOW,
    )

    assert summary.processed == 1
    assert [item.content for item in sms_provider.sent] == ["See you tomorrow for Hot water install"]
    assert [marker.entity_id for marker in _markers(db)] == [tomorrow_job.id]


def test_overdue_invoice_becomes_overdue_and_marker_is_success_even_if_email_fails(db, seed, email_sender):
    email_sender.status = "failed"
    email_sender.detail = "smtp down"
    user = seed.user()
    client = seed.client(user)
    invoice = seed.invoice(user, client, status="sent", due_date=NOW - timedelta(days=10))
    seed.automation(
        user,
        trigger=INVOICE_OVERDUE,
        actions=[
            {"type": "send_email", "template": "invoice_reminder"},
            {"type": "update_status", "newStatus": "overdue"},
        ],
    )

    summary = process_time_based_automations(SqlAutomationStorage(db), email_sender=email_sender, now=NOW)

    assert summary.processed == 1
    assert len(email_sender.sent) == 1
    assert invoice.status == "overdue"
    assert [marker.result for marker in _markers(db)] == ["success"]


def test_default_no_response_delay_applies_when_unset(db, seed, email_sender):
    user = seed.user()
    client = seed.client(user)
    seed.quote(user, client, number="Q-old", sent_at=NOW - timedelta(days=4))
    seed.quote(user, client, number="Q-new", sent_at=NOW - timedelta(days=2))
    seed.automation(
        user,
        trigger={"type": "no_response", "entityType": "quote"},
        actions=[{"type": "notification", "message": "{quote_number}"}],
    )

    summary = process_time_based_automations(SqlAutomationStorage(db), email_sender=email_sender, now=NOW)

    assert summary.processed == 1
    assert [row.message for row in db.execute(select(Notification)).scalars()] == ["Q-old"]


def test_inactive_and_event_automations_are_ignored(db, seed, email_sender):
    user = seed.user()
    client = seed.client(user)
    seed.quote(user, client, sent_at=NOW - timedelta(days=10))
    seed.automation(user, trigger=QUOTE_FOLLOW_UP, actions=[{"type": "notification"}], is_active=False)
    seed.automation(
        user,
        trigger={"type": "status_change", "entityType": "quote", "toStatus": "accepted"},
        actions=[{"type": "notification"}],
    )
    seed.automation(user, trigger={"type": "bogus"}, actions=[{"type": "notification"}], name="Broken trigger")

    summary = process_time_based_automations(SqlAutomationStorage(db), email_sender=email_sender, now=NOW)

    assert summary.processed == 0
    assert summary.errors == 0
    assert _markers(db) == []


def test_entity_failure_is_marked_as_error_and_not_retried(db, seed, email_sender):
    user = seed.user()
    client = seed.client(user)
    seed.quote(user, client, sent_at=NOW - timedelta(days=4))
    seed.automation(user, trigger=QUOTE_FOLLOW_UP, actions=[{"type": "notification"}])
    storage = FailingSetupStorage(db)

    first = process_time_based_automations(storage, email_sender=email_sender, now=NOW)
    second = process_time_based_automations(storage, email_sender=email_sender, now=NOW)

    assert (first.processed, first.errors) == (0, 1)
    assert (second.processed, second.errors) == (0, 0)
    markers = _markers(db)
    assert len(markers) == 1
    assert markers[0].result == "error"
    assert markers[0].error_message == "user lookup failed"


def test_one_failing_user_does_not_block_the_batch(db, seed, email_sender):
    broken = seed.user(email="broken@example.com")
    healthy = seed.user(email="healthy@example.com")
    for user in (broken, healthy):
        client = seed.client(user)
        seed.quote(user, client, sent_at=NOW - timedelta(days=4))
        seed.automation(user, trigger=QUOTE_FOLLOW_UP, actions=[{"type": "notification"}])

    summary = process_time_based_automations(
        FailingUserStorage(db, broken.id),
        email_sender=email_sender,
        now=NOW,
    )

    assert summary.processed == 1
    assert summary.errors == 1
    notification = db.execute(select(Notification)).scalar_one()
    assert notification.user_id == healthy.id


def test_user_ids_limit_the_scan(db, seed, email_sender):
    first = seed.user(email="first@example.com")
    second = seed.user(email="second@example.com")
    for user in (first, second):
        client = seed.client(user)
        seed.quote(user, client, sent_at=NOW - timedelta(days=4))
        seed.automation(user, trigger=QUOTE_FOLLOW_UP, actions=[{"type": "notification"}])

    summary = process_time_based_automations(
        SqlAutomationStorage(db),
        email_sender=email_sender,
        now=NOW,
        user_ids=[second.id],
    )

    assert summary.processed == 1
    assert db.execute(select(Notification)).scalar_one().user_id == second.id


def test_database_error_in_one_tenant_does_not_block_the_scan(db, seed, write_guard, email_sender):
    broken = seed.user(email="broken@example.com")
    healthy = seed.user(email="healthy@example.com")
    tenants = (
        (broken, [{"type": "update_status", "newStatus": "on_hold"}, {"type": "notification"}]),
        (healthy, [{"type": "notification"}]),
    )
    for user, actions in tenants:
        client = seed.client(user)
        seed.quote(user, client, sent_at=NOW - timedelta(days=4))
        seed.automation(user, trigger=QUOTE_FOLLOW_UP, actions=actions)
    write_guard.reject_status("quotes", "on_hold")

    summary = process_time_based_automations(SqlAutomationStorage(db), email_sender=email_sender, now=NOW)
    db.commit()

    assert (summary.processed, summary.errors) == (2, 0)
    assert [marker.result for marker in _markers(db)] == ["success", "success"]
    notifications = db.execute(select(Notification)).scalars().all()
    assert {row.user_id for row in notifications} == {broken.id, healthy.id}
    assert set(db.execute(select(Quote.status)).scalars().all()) == {"sent"}


def test_failed_success_marker_rolls_back_the_entity_and_marks_it_failed(db, seed, write_guard, email_sender):
    user = seed.user()
    client = seed.client(user)
    seed.quote(user, client, sent_at=NOW - timedelta(days=4))
    seed.automation(user, trigger=QUOTE_FOLLOW_UP, actions=[{"type": "notification"}])
    write_guard.reject_marker("success")
    storage = SqlAutomationStorage(db)

    first = process_time_based_automations(storage, email_sender=email_sender, now=NOW)
    second = process_time_based_automations(storage, email_sender=email_sender, now=NOW)
    db.commit()

    assert (first.processed, first.errors) == (0, 1)
    assert (second.processed, second.errors) == (0, 0)
    markers = _markers(db)
    assert len(markers) == 1
    assert markers[0].result == "error"
    assert "marker rejected" in markers[0].error_message
    assert db.execute(select(Notification)).scalars().all() == []
