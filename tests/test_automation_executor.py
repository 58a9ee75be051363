import re
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from tradiedesk.core.config import settings
from tradiedesk.core.dates import ensure_utc
from tradiedesk.models.invoice import Invoice
from tradiedesk.models.job import Job
from tradiedesk.models.notification import Notification
from tradiedesk.models.quote import Quote
from tradiedesk.services.automation_service import execute_automation_actions, resolve_business_name
from tradiedesk.services.automation_storage import SqlAutomationStorage

NOW = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)


class BrokenNotificationStorage(SqlAutomationStorage):
    def create_notification(self, data):
        raise RuntimeError("notification store offline")


def test_send_email_uses_catalog_content_for_email_key(db, seed, email_sender):
    user = seed.user(business_name="Dave's Plumbing")
    client = seed.client(user, name="O'Brien & Sons")
    quote = seed.quote(user, client, number="Q-2001")

    outcomes = execute_automation_actions(
        SqlAutomationStorage(db),
        user.id,
        [{"type": "send_email", "template": "quote_follow_up"}],
        {"quote": quote},
        email_sender=email_sender,
        now=NOW,
    )

    assert [(item.action_type, item.status) for item in outcomes] == [("send_email", "success")]
    assert len(email_sender.sent) == 1
    sent = email_sender.sent[0]
    assert sent.to == "sarah@example.com"
    assert sent.subject == "Following up on your quote - Q-2001"
    assert sent.text.startswith("G'day O'Brien & Sons,")
    assert "Dave's Plumbing" in sent.text
    assert "O&#x27;Brien &amp; Sons" in sent.html
    assert sent.html.count("<p ") == len(sent.text.split("\n"))


def test_send_email_without_template_uses_entity_default_content(db, seed, email_sender):
    user = seed.user()
    client = seed.client(user)
    invoice = seed.invoice(user, client, number="TT-2026-004-ZZZZ")

    execute_automation_actions(
        SqlAutomationStorage(db),
        user.id,
        [{"type": "send_email"}],
        {"invoice": invoice},
        email_sender=email_sender,
        now=NOW,
    )

    assert email_sender.sent[0].subject == "Payment Reminder - Invoice TT-2026-004-ZZZZ"
    assert "Amount Due: $880.00" in email_sender.sent[0].text


def test_send_email_falls_back_to_the_automation_template(db, seed, email_sender):
    user = seed.user()
    client = seed.client(user)
    quote = seed.quote(user, client, number="Q-3")

    execute_automation_actions(
        SqlAutomationStorage(db),
        user.id,
        [{"type": "send_email"}],
        {"quote": quote},
        email_sender=email_sender,
        template_id="quote-accepted-confirmation",
        now=NOW,
    )

    assert email_sender.sent[0].subject == "Thanks! Quote Q-3 Accepted"


def test_missing_client_email_skips_email_and_continues(db, seed, email_sender):
    user = seed.user()
    client = seed.client(user, email=None)
    quote = seed.quote(user, client)

    outcomes = execute_automation_actions(
        SqlAutomationStorage(db),
        user.id,
        [{"type": "send_email", "template": "quote_follow_up"}, {"type": "notification", "message": "Chased {client_name}"}],
        {"quote": quote},
        email_sender=email_sender,
        now=NOW,
    )

    assert [item.status for item in outcomes] == ["skipped", "success"]
    assert email_sender.sent == []
    notification = db.execute(select(Notification)).scalar_one()
    assert notification.message == "Chased Sarah Jones"


def test_failed_email_is_reported_and_later_actions_still_run(db, seed, email_sender):
    email_sender.status = "failed"
    email_sender.detail = "mailbox unavailable"
    user = seed.user()
    client = seed.client(user)
    quote = seed.quote(user, client)

    outcomes = execute_automation_actions(
        SqlAutomationStorage(db),
        user.id,
        [{"type": "send_email"}, {"type": "notification"}],
        {"quote": quote},
        email_sender=email_sender,
        now=NOW,
    )

    assert outcomes[0].status == "failed"
    assert outcomes[0].detail == "mailbox unavailable"
    assert outcomes[1].status == "success"
    notification = db.execute(select(Notification)).scalar_one()
    assert notification.title == "Automation Alert"
    assert notification.message == "Automation triggered"
    assert notification.type == "automation"


def test_raising_action_is_isolated(db, seed, email_sender):
    user = seed.user()
    client = seed.client(user)
    invoice = seed.invoice(user, client)

    outcomes = execute_automation_actions(
        BrokenNotificationStorage(db),
        user.id,
        [{"type": "notification"}, {"type": "update_status", "newStatus": "overdue"}],
        {"invoice": invoice},
        email_sender=email_sender,
        now=NOW,
    )

    assert [item.status for item in outcomes] == ["failed", "success"]
    assert outcomes[0].detail == "notification store offline"
    assert invoice.status == "overdue"


def test_notification_records_entity_reference(db, seed):
    user = seed.user()
    client = seed.client(user)
    job = seed.job(user, client, title="Deck build")

    execute_automation_actions(
        SqlAutomationStorage(db),
        user.id,
        [{"type": "notification", "message": "{job_title} for {client_name}"}],
        {"job": job},
        now=NOW,
    )

    notification = db.execute(select(Notification)).scalar_one()
    assert notification.user_id == user.id
    assert notification.message == "Deck build for Sarah Jones"
    assert notification.entity_type == "job"
    assert notification.entity_id == job.id
    assert notification.read is False


def test_send_sms_uses_injected_provider(db, seed, sms_provider):
    user = seed.user(business_name="Sparky Co")
    client = seed.client(user)
    quote = seed.quote(user, client, number="Q-88")

    outcomes = execute_automation_actions(
        SqlAutomationStorage(db),
        user.id,
        [{"type": "send_sms", "message": "Hi {client_name}, re {quote_number} - {business_name}"}],
        {"quote": quote},
        sms_provider=sms_provider,
        now=NOW,
    )

    assert outcomes[0].status == "success"
    assert outcomes[0].detail == "sms-1"
    request = sms_provider.sent[0]
    assert request.user_id == user.id
    assert request.recipient == "0412 345 678"
    assert request.content == "Hi Sarah Jones, re Q-88 - Sparky Co"


def test_send_sms_skips_client_without_phone(db, seed, sms_provider):
    user = seed.user()
    client = seed.client(user, phone=None)
    quote = seed.quote(user, client)

    outcomes = execute_automation_actions(
        SqlAutomationStorage(db),
        user.id,
        [{"type": "send_sms", "message": "Hello"}],
        {"quote": quote},
        sms_provider=sms_provider,
        now=NOW,
    )

    assert outcomes[0].status == "skipped"
    assert sms_provider.sent == []


def test_create_job_from_quote(db, seed):
    user = seed.user()
    client = seed.client(user)
    quote = seed.quote(user, client, title=None, number="Q-42", description="Replace taps")

    outcomes = execute_automation_actions(
        SqlAutomationStorage(db),
        user.id,
        [{"type": "create_job"}],
        {"quote": quote},
        now=NOW,
    )

    job = db.execute(select(Job)).scalar_one()
    assert outcomes[0].detail == job.id
    assert job.title == "Job from Quote Q-42"
    assert job.description == "Replace taps"
    assert job.status == "pending"
    assert job.quote_id == quote.id
    assert job.client_id == client.id


def test_create_job_without_quote_is_skipped(db, seed):
    user = seed.user()
    client = seed.client(user)
    invoice = seed.invoice(user, client)

    outcomes = execute_automation_actions(
        SqlAutomationStorage(db),
        user.id,
        [{"type": "create_job"}],
        {"invoice": invoice},
        now=NOW,
    )

    assert outcomes[0].status == "skipped"
    assert db.execute(select(Job)).scalars().all() == []


def test_create_invoice_from_job(db, seed):
    user = seed.user()
    client = seed.client(user)
    job = seed.job(user, client, status="done")

    execute_automation_actions(
        SqlAutomationStorage(db),
        user.id,
        [{"type": "create_invoice"}],
        {"job": job},
        now=NOW,
    )

    invoice = db.execute(select(Invoice)).scalar_one()
    assert invoice.status == "draft"
    assert invoice.job_id == job.id
    assert invoice.client_id == client.id
    assert re.fullmatch(r"TT-\d{4}-001-[A-Z0-9]{4}", invoice.number)
    assert ensure_utc(invoice.issue_date) == NOW
    assert ensure_utc(invoice.due_date) == NOW + timedelta(days=settings.automation_invoice_due_days)
    assert invoice.total == 0


def test_update_status_prefers_invoice_over_job(db, seed):
    user = seed.user()
    client = seed.client(user)
    job = seed.job(user, client, status="done")
    invoice = seed.invoice(user, client, status="sent")

    execute_automation_actions(
        SqlAutomationStorage(db),
        user.id,
        [{"type": "update_status", "newStatus": "overdue"}],
        {"job": job, "invoice": invoice},
        now=NOW,
    )

    assert invoice.status == "overdue"
    assert job.status == "done"


def test_update_status_without_new_status_is_skipped(db, seed):
    user = seed.user()
    client = seed.client(user)
    quote = seed.quote(user, client)

    outcomes = execute_automation_actions(
        SqlAutomationStorage(db),
        user.id,
        [{"type": "update_status"}],
        {"quote": quote},
        now=NOW,
    )

    assert outcomes[0].status == "skipped"
    assert quote.status == "sent"


def test_invalid_actions_are_dropped(db, seed):
    user = seed.user()

    outcomes = execute_automation_actions(
        SqlAutomationStorage(db),
        user.id,
        [{"type": "teleport"}, {"type": "notification"}],
        {},
        now=NOW,
    )

    assert [item.action_type for item in outcomes] == ["notification"]


def test_business_name_resolution_chain():
    class Named:
        def __init__(self, **values):
            self.__dict__.update(values)

    assert resolve_business_name(Named(business_name="Biz"), Named(first_name="Dave")) == "Biz"
    assert resolve_business_name(Named(business_name=None), Named(first_name="Dave")) == "Dave"
    assert resolve_business_name(None, None) == settings.automation_business_name_fallback


def test_database_error_in_one_action_leaves_the_session_usable(db, seed, write_guard):
    user = seed.user()
    client = seed.client(user)
    quote = seed.quote(user, client)
    write_guard.reject_status("quotes", "on_hold")

    outcomes = execute_automation_actions(
        SqlAutomationStorage(db),
        user.id,
        [{"type": "update_status", "newStatus": "on_hold"}, {"type": "notification"}],
        {"quote": quote},
        now=NOW,
    )
    db.commit()

    assert [item.status for item in outcomes] == ["failed", "success"]
    assert "status on_hold rejected" in outcomes[0].detail
    assert db.execute(select(Quote.status)).scalar_one() == "sent"
    notification = db.execute(select(Notification)).scalar_one()
    assert notification.user_id == user.id
