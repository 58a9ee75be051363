import re
from datetime import datetime, timezone

import pytest

from tradiedesk.models.automation import AutomationLog
from tradiedesk.services.automation_storage import SqlAutomationStorage


def test_users_with_active_automations_only(db, seed):
    active = seed.user(email="active@example.com")
    idle = seed.user(email="idle@example.com")
    seed.user(email="none@example.com")
    seed.automation(active, trigger={"type": "no_response", "entityType": "quote"}, actions=[{"type": "notification"}])
    seed.automation(
        idle,
        trigger={"type": "no_response", "entityType": "quote"},
        actions=[{"type": "notification"}],
        is_active=False,
    )

    assert SqlAutomationStorage(db).get_all_users_with_automations() == [active.id]


def test_marker_write_is_insert_or_skip(db, seed):
    user = seed.user()
    automation = seed.automation(user, trigger={"type": "no_response", "entityType": "quote"}, actions=[{"type": "notification"}])
    storage = SqlAutomationStorage(db)

    assert storage.has_automation_processed(automation.id, "quote", "q-1") is False
    storage.log_automation_processed(automation.id, "quote", "q-1", "success")
    storage.log_automation_processed(automation.id, "quote", "q-1", "error", "late duplicate")

    assert storage.has_automation_processed(automation.id, "quote", "q-1") is True
    assert storage.has_automation_processed(automation.id, "job", "q-1") is False
    rows = db.query(AutomationLog).all()
    assert len(rows) == 1
    assert rows[0].result == "success"


def test_marker_error_message_is_truncated(db, seed):
    user = seed.user()
    automation = seed.automation(user, trigger={"type": "no_response", "entityType": "quote"}, actions=[{"type": "notification"}])

    SqlAutomationStorage(db).log_automation_processed(automation.id, "quote", "q-2", "error", "x" * 400)

    assert len(db.query(AutomationLog).one().error_message) == 255


def test_entity_lookups_are_scoped_to_the_owner(db, seed):
    owner = seed.user(email="owner@example.com")
    stranger = seed.user(email="stranger@example.com")
    client = seed.client(owner)
    quote = seed.quote(owner, client)
    storage = SqlAutomationStorage(db)

    assert storage.get_quote(quote.id, owner.id) is quote
    assert storage.get_quote(quote.id, stranger.id) is None
    assert storage.get_client(client.id, stranger.id) is None


def test_invoice_numbers_continue_the_yearly_sequence(db, seed):
    user = seed.user(business_name="Sparky Co")
    client = seed.client(user)
    year = datetime.now(timezone.utc).year
    seed.invoice(user, client, number=f"TT-{year}-007-ABCD")
    seed.invoice(user, client, number=f"TT-{year}-003")

    number = SqlAutomationStorage(db).generate_invoice_number(user.id)

    assert re.fullmatch(rf"TT-{year}-008-[A-Z0-9]{{4}}", number)


def test_invoice_number_uses_business_prefix(db, seed):
    user = seed.user(business_name="Sparky Co")
    user_settings = SqlAutomationStorage(db).get_business_settings(user.id)
    user_settings.invoice_prefix = "SPK-"
    db.flush()

    number = SqlAutomationStorage(db).generate_invoice_number(user.id)

    assert number.startswith(f"SPK-{datetime.now(timezone.utc).year}-001-")


def test_patch_rejects_unknown_fields(db, seed):
    user = seed.user()
    job = seed.job(user, seed.client(user))
    storage = SqlAutomationStorage(db)

    assert storage.update_job(job.id, user.id, {"status": "done"}).status == "done"
    assert storage.update_job("missing", user.id, {"status": "done"}) is None
    with pytest.raises(ValueError):
        storage.update_job(job.id, user.id, {"colour": "blue"})


def test_automation_logs_are_scoped_and_limited(db, seed):
    owner = seed.user(email="owner@example.com")
    other = seed.user(email="other@example.com")
    mine = seed.automation(owner, trigger={"type": "no_response", "entityType": "quote"}, actions=[{"type": "notification"}])
    theirs = seed.automation(other, trigger={"type": "no_response", "entityType": "quote"}, actions=[{"type": "notification"}])
    storage = SqlAutomationStorage(db)
    for index in range(3):
        storage.log_automation_processed(mine.id, "quote", f"q-{index}", "success")
    storage.log_automation_processed(theirs.id, "quote", "q-x", "success")

    logs = storage.get_automation_logs(owner.id, limit=2)

    assert len(logs) == 2
    assert {row.automation_id for row in logs} == {mine.id}
