import html
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from pydantic import ValidationError

from tradiedesk.core.config import settings
from tradiedesk.core.dates import automation_zone, ensure_utc, local_date
from tradiedesk.core.observability import log_automation_event
from tradiedesk.schemas.automation import AutomationAction, AutomationTrigger
from tradiedesk.services.automation_storage import AutomationStorage
from tradiedesk.services.automation_templates import (
    DEFAULT_EMAIL_CONTENT,
    get_template_by_email_key,
    get_template_by_id,
)
from tradiedesk.services.automation_variables import entity_value, replace_variables
from tradiedesk.services.email_service import EmailSendRequest, EmailSender, get_email_sender
from tradiedesk.services.messaging_provider import SmsProvider, SmsSendRequest, get_sms_provider


_NO_RESPONSE_STATUSES = {"sent", "viewed"}
_OVERDUE_JOB_STATUSES = {"scheduled", "in_progress"}
_OVERDUE_INVOICE_STATUSES = {"sent", "viewed", "overdue"}
_CONTEXT_ENTITY_TYPES = ("quote", "job", "invoice")


@dataclass(frozen=True)
class AutomationScanSummary:
    processed: int
    errors: int


@dataclass(frozen=True)
class ActionOutcome:
    action_type: str
    status: str
    detail: str | None = None


def parse_trigger(raw: Any) -> AutomationTrigger | None:
    if isinstance(raw, AutomationTrigger):
        return raw
    if not isinstance(raw, dict):
        return None
    try:
        return AutomationTrigger.model_validate(raw)
    except ValidationError:
        return None


def parse_actions(raw: Any) -> list[AutomationAction]:
    if not raw:
        return []
    actions: list[AutomationAction] = []
    for item in raw:
        if isinstance(item, AutomationAction):
            actions.append(item)
            continue
        if not isinstance(item, dict):
            continue
        try:
            actions.append(AutomationAction.model_validate(item))
        except ValidationError:
            log_automation_event("automation.action.invalid", level=logging.WARNING, action=item)
    return actions


def _normalize_status(value: Any) -> str:
    return str(value or "").strip().lower()


def _status(entity: Any) -> str:
    return _normalize_status(entity_value(entity, "status"))


def no_response_matches(quote: Any, *, delay_days: int, now: datetime) -> bool:
    if _status(quote) not in _NO_RESPONSE_STATUSES:
        return False
    reference = ensure_utc(entity_value(quote, "sent_at")) or ensure_utc(entity_value(quote, "created_at"))
    if reference is None:
        return False
    return reference < now - timedelta(days=delay_days)


def upcoming_job_matches(job: Any, *, days_ahead: int, now: datetime) -> bool:
    scheduled_day = local_date(entity_value(job, "scheduled_at"))
    if scheduled_day is None:
        return False
    target_day = now.astimezone(automation_zone()).date() + timedelta(days=days_ahead)
    return scheduled_day == target_day and _status(job) == "scheduled"


def overdue_job_matches(job: Any, *, delay_days: int, now: datetime) -> bool:
    scheduled_at = ensure_utc(entity_value(job, "scheduled_at"))
    if scheduled_at is None:
        return False
    return scheduled_at < now - timedelta(days=delay_days) and _status(job) in _OVERDUE_JOB_STATUSES


def overdue_invoice_matches(invoice: Any, *, delay_days: int, now: datetime) -> bool:
    due_date = ensure_utc(entity_value(invoice, "due_date"))
    if due_date is None:
        return False
    status = _status(invoice)
    # The paid guard stays even though the status set already excludes it.
    return due_date < now - timedelta(days=delay_days) and status in _OVERDUE_INVOICE_STATUSES and status != "paid"


def status_change_matches(
    trigger: AutomationTrigger,
    *,
    entity_type: str,
    from_status: str | None,
    to_status: str | None,
) -> bool:
    if trigger.type != "status_change" or trigger.entity_type != entity_type:
        return False
    if trigger.from_status and _normalize_status(trigger.from_status) != _normalize_status(from_status):
        return False
    if trigger.to_status and _normalize_status(trigger.to_status) != _normalize_status(to_status):
        return False
    return True


def _delay_days(trigger: AutomationTrigger) -> int:
    if trigger.delay_days is not None:
        return trigger.delay_days
    if trigger.type == "no_response":
        return settings.automation_no_response_default_days
    return settings.automation_time_delay_default_days


def find_due_entities(
    storage: AutomationStorage,
    *,
    user_id: str,
    trigger: AutomationTrigger,
    now: datetime,
) -> list[tuple[str, Any]]:
    delay_days = _delay_days(trigger)

    if trigger.type == "no_response":
        if trigger.entity_type != "quote":
            return []
        return [
            ("quote", quote)
            for quote in storage.get_quotes(user_id)
            if no_response_matches(quote, delay_days=delay_days, now=now)
        ]

    if trigger.type == "time_delay":
        if trigger.entity_type == "job":
            jobs = storage.get_jobs(user_id)
            if delay_days < 0:
                return [
                    ("job", job)
                    for job in jobs
                    if upcoming_job_matches(job, days_ahead=abs(delay_days), now=now)
                ]
            return [("job", job) for job in jobs if overdue_job_matches(job, delay_days=delay_days, now=now)]
        if trigger.entity_type == "invoice":
            return [
                ("invoice", invoice)
                for invoice in storage.get_invoices(user_id)
                if overdue_invoice_matches(invoice, delay_days=delay_days, now=now)
            ]
        return []

    return []


def process_time_based_automations(
    storage: AutomationStorage,
    *,
    email_sender: EmailSender | None = None,
    sms_provider: SmsProvider | None = None,
    now: datetime | None = None,
    user_ids: Iterable[str] | None = None,
) -> AutomationScanSummary:
    current = ensure_utc(now) if now else datetime.now(timezone.utc)
    processed = 0
    errors = 0
    log_automation_event("automation.scan.started", now=current.isoformat())

    if user_ids is None:
        try:
            user_ids = storage.get_all_users_with_automations()
        except Exception as exc:  # noqa: BLE001
            log_automation_event("automation.scan.failed", level=logging.ERROR, error=_short_error(exc))
            return AutomationScanSummary(processed=0, errors=1)

    for user_id in user_ids:
        try:
            with storage.savepoint():
                automations = storage.get_automations(user_id)
            for automation in automations:
                if not automation.is_active:
                    continue
                trigger = parse_trigger(automation.trigger_json)
                if trigger is None:
                    log_automation_event(
                        "automation.trigger.invalid",
                        level=logging.WARNING,
                        automation_id=automation.id,
                        user_id=user_id,
                    )
                    continue
                if trigger.type not in {"no_response", "time_delay"}:
                    continue
                automation_processed, automation_errors = _process_scan_automation(
                    storage,
                    user_id=user_id,
                    automation=automation,
                    trigger=trigger,
                    email_sender=email_sender,
                    sms_provider=sms_provider,
                    now=current,
                )
                processed += automation_processed
                errors += automation_errors
        except Exception as exc:  # noqa: BLE001
            errors += 1
            log_automation_event(
                "automation.scan.user_failed",
                level=logging.ERROR,
                user_id=user_id,
                error=_short_error(exc),
            )

    log_automation_event("automation.scan.completed", processed=processed, errors=errors)
    return AutomationScanSummary(processed=processed, errors=errors)


def _process_scan_automation(
    storage: AutomationStorage,
    *,
    user_id: str,
    automation: Any,
    trigger: AutomationTrigger,
    email_sender: EmailSender | None,
    sms_provider: SmsProvider | None,
    now: datetime,
) -> tuple[int, int]:
    processed = 0
    errors = 0
    try:
        with storage.savepoint():
            candidates = find_due_entities(storage, user_id=user_id, trigger=trigger, now=now)
        actions = parse_actions(automation.actions_json)
        for entity_type, entity in candidates:
            entity_id = entity.id
            try:
                # Actions and the success marker commit or roll back together.
                with storage.savepoint():
                    if storage.has_automation_processed(automation.id, entity_type, entity_id):
                        continue
                    execute_automation_actions(
                        storage,
                        user_id,
                        actions,
                        {entity_type: entity},
                        email_sender=email_sender,
                        sms_provider=sms_provider,
                        template_id=automation.template_id,
                        now=now,
                    )
                    storage.log_automation_processed(automation.id, entity_type, entity_id, "success")
            except Exception as exc:  # noqa: BLE001
                message = _short_error(exc)
                errors += 1
                log_automation_event(
                    "automation.entity.failed",
                    level=logging.ERROR,
                    automation_id=automation.id,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    error=message,
                )
                _mark_entity_failed(storage, automation.id, entity_type, entity_id, message)
                continue
            processed += 1
            log_automation_event(
                "automation.entity.processed",
                automation_id=automation.id,
                automation_name=automation.name,
                entity_type=entity_type,
                entity_id=entity_id,
            )
    except Exception as exc:  # noqa: BLE001
        errors += 1
        log_automation_event(
            "automation.scan.automation_failed",
            level=logging.ERROR,
            automation_id=automation.id,
            trigger_type=trigger.type,
            error=_short_error(exc),
        )
    return processed, errors


def _mark_entity_failed(
    storage: AutomationStorage,
    automation_id: str,
    entity_type: str,
    entity_id: str,
    message: str,
) -> None:
    try:
        with storage.savepoint():
            storage.log_automation_processed(automation_id, entity_type, entity_id, "error", message)
    except Exception as exc:  # noqa: BLE001
        log_automation_event(
            "automation.marker.failed",
            level=logging.ERROR,
            automation_id=automation_id,
            entity_type=entity_type,
            entity_id=entity_id,
            error=_short_error(exc),
        )


def process_status_change_automation(
    storage: AutomationStorage,
    user_id: str,
    entity_type: str,
    entity_id: str,
    from_status: str | None,
    to_status: str | None,
    *,
    email_sender: EmailSender | None = None,
    sms_provider: SmsProvider | None = None,
) -> int:
    fired = 0
    try:
        with storage.savepoint():
            automations = storage.get_automations(user_id)
        matching = []
        for automation in automations:
            if not automation.is_active:
                continue
            trigger = parse_trigger(automation.trigger_json)
            if trigger and status_change_matches(
                trigger,
                entity_type=entity_type,
                from_status=from_status,
                to_status=to_status,
            ):
                matching.append(automation)

        for automation in matching:
            with storage.savepoint():
                entity = _load_entity(storage, entity_type=entity_type, entity_id=entity_id, user_id=user_id)
            if entity is None:
                log_automation_event(
                    "automation.status_change.entity_missing",
                    level=logging.WARNING,
                    automation_id=automation.id,
                    entity_type=entity_type,
                    entity_id=entity_id,
                )
                continue
            with storage.savepoint():
                execute_automation_actions(
                    storage,
                    user_id,
                    parse_actions(automation.actions_json),
                    {entity_type: entity},
                    email_sender=email_sender,
                    sms_provider=sms_provider,
                    template_id=automation.template_id,
                )
            fired += 1
    except Exception as exc:  # noqa: BLE001
        log_automation_event(
            "automation.status_change.failed",
            level=logging.ERROR,
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            error=_short_error(exc),
        )
    return fired


def process_payment_received_automation(
    storage: AutomationStorage,
    user_id: str,
    invoice_id: str,
    *,
    email_sender: EmailSender | None = None,
    sms_provider: SmsProvider | None = None,
) -> int:
    fired = 0
    try:
        with storage.savepoint():
            automations = storage.get_automations(user_id)
        matching = []
        for automation in automations:
            if not automation.is_active:
                continue
            trigger = parse_trigger(automation.trigger_json)
            if trigger and trigger.type == "payment_received" and trigger.entity_type == "invoice":
                matching.append(automation)
        if not matching:
            return 0

        with storage.savepoint():
            invoice = storage.get_invoice(invoice_id, user_id)
        if invoice is None:
            log_automation_event(
                "automation.payment_received.invoice_missing",
                level=logging.WARNING,
                user_id=user_id,
                invoice_id=invoice_id,
            )
            return 0

        for automation in matching:
            with storage.savepoint():
                execute_automation_actions(
                    storage,
                    user_id,
                    parse_actions(automation.actions_json),
                    {"invoice": invoice},
                    email_sender=email_sender,
                    sms_provider=sms_provider,
                    template_id=automation.template_id,
                )
            fired += 1
    except Exception as exc:  # noqa: BLE001
        log_automation_event(
            "automation.payment_received.failed",
            level=logging.ERROR,
            user_id=user_id,
            invoice_id=invoice_id,
            error=_short_error(exc),
        )
    return fired


def _load_entity(storage: AutomationStorage, *, entity_type: str, entity_id: str, user_id: str) -> Any:
    if entity_type == "quote":
        return storage.get_quote(entity_id, user_id)
    if entity_type == "job":
        return storage.get_job(entity_id, user_id)
    if entity_type == "invoice":
        return storage.get_invoice(entity_id, user_id)
    raise ValueError(f"Unsupported entity type '{entity_type}'")


def resolve_business_name(business_settings: Any, user: Any) -> str:
    return (
        entity_value(business_settings, "business_name")
        or entity_value(user, "first_name")
        or settings.automation_business_name_fallback
    )


def execute_automation_actions(
    storage: AutomationStorage,
    user_id: str,
    actions: Sequence[AutomationAction | dict[str, Any]],
    context: dict[str, Any],
    *,
    email_sender: EmailSender | None = None,
    sms_provider: SmsProvider | None = None,
    template_id: str | None = None,
    now: datetime | None = None,
) -> list[ActionOutcome]:
    """Run ``actions`` in order against a single-entity context.

    Setup lookups (user, business settings, client) propagate their errors so
    the scanner can mark the entity as failed. Each action after that is
    isolated: a failing action is logged and reported as ``failed`` and the
    remaining actions still run. Each action runs in its own savepoint, so a
    failed write only undoes that action.
    """
    user = storage.get_user(user_id)
    business_settings = storage.get_business_settings(user_id)
    business_name = resolve_business_name(business_settings, user)

    client = None
    client_id = _context_client_id(context)
    if client_id:
        client = storage.get_client(client_id, user_id)

    outcomes: list[ActionOutcome] = []
    for action in parse_actions(actions):
        try:
            with storage.savepoint():
                outcome = _execute_action(
                    storage,
                    user_id=user_id,
                    action=action,
                    context=context,
                    client=client,
                    business_name=business_name,
                    email_sender=email_sender,
                    sms_provider=sms_provider,
                    template_id=template_id,
                    now=ensure_utc(now) if now else datetime.now(timezone.utc),
                )
        except Exception as exc:  # noqa: BLE001
            outcome = ActionOutcome(action_type=action.type, status="failed", detail=_short_error(exc))
            log_automation_event(
                "automation.action.failed",
                level=logging.ERROR,
                user_id=user_id,
                action_type=action.type,
                error=outcome.detail,
            )
        outcomes.append(outcome)
    return outcomes


def _execute_action(
    storage: AutomationStorage,
    *,
    user_id: str,
    action: AutomationAction,
    context: dict[str, Any],
    client: Any,
    business_name: str,
    email_sender: EmailSender | None,
    sms_provider: SmsProvider | None,
    template_id: str | None,
    now: datetime,
) -> ActionOutcome:
    if action.type == "notification":
        return _action_notification(storage, user_id=user_id, action=action, context=context, client=client)
    if action.type == "send_email":
        return _action_send_email(
            action=action,
            context=context,
            client=client,
            business_name=business_name,
            email_sender=email_sender,
            template_id=template_id,
        )
    if action.type == "send_sms":
        return _action_send_sms(
            user_id=user_id,
            action=action,
            context=context,
            client=client,
            business_name=business_name,
            sms_provider=sms_provider,
        )
    if action.type == "create_job":
        return _action_create_job(storage, user_id=user_id, context=context)
    if action.type == "create_invoice":
        return _action_create_invoice(storage, user_id=user_id, context=context, now=now)
    if action.type == "update_status":
        return _action_update_status(storage, user_id=user_id, action=action, context=context)
    raise ValueError(f"Unsupported action type '{action.type}'")


def _action_notification(
    storage: AutomationStorage,
    *,
    user_id: str,
    action: AutomationAction,
    context: dict[str, Any],
    client: Any,
) -> ActionOutcome:
    entity_type, entity = _context_entity(context)
    message = replace_variables(action.message or "Automation triggered", context, client)
    notification = storage.create_notification(
        {
            "user_id": user_id,
            "type": "automation",
            "title": "Automation Alert",
            "message": message,
            "entity_type": entity_type,
            "entity_id": entity_value(entity, "id"),
        }
    )
    return ActionOutcome(action_type=action.type, status="success", detail=notification.id)


def _email_content(
    *,
    action: AutomationAction,
    context: dict[str, Any],
    template_id: str | None,
) -> tuple[str, str]:
    template = None
    if action.template:
        template = get_template_by_id(action.template) or get_template_by_email_key(action.template)
    if template is None and template_id:
        template = get_template_by_id(template_id)
    if template is not None and template.email_subject and template.email_body:
        return template.email_subject, template.email_body

    entity_type, _ = _context_entity(context)
    return DEFAULT_EMAIL_CONTENT.get(entity_type or "", ("", ""))


def render_email_html(body: str) -> str:
    paragraphs = "".join(f'<p style="margin: 8px 0;">{html.escape(line)}</p>' for line in body.split("\n"))
    return (
        "<!DOCTYPE html>\n"
        "<html>\n"
        '<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; '
        'max-width: 600px; margin: 0 auto; padding: 20px;">\n'
        f'<div style="background: #f8f9fa; padding: 20px; border-radius: 8px;">{paragraphs}</div>\n'
        "</body>\n"
        "</html>\n"
    )


def _action_send_email(
    *,
    action: AutomationAction,
    context: dict[str, Any],
    client: Any,
    business_name: str,
    email_sender: EmailSender | None,
    template_id: str | None,
) -> ActionOutcome:
    recipient = entity_value(client, "email")
    if not recipient:
        log_automation_event("automation.email.skipped", reason="no client email address")
        return ActionOutcome(action_type=action.type, status="skipped", detail="no client email address")

    subject_template, body_template = _email_content(action=action, context=context, template_id=template_id)
    subject = replace_variables(subject_template, context, client, business_name)
    body = replace_variables(body_template, context, client, business_name)

    sender = email_sender or get_email_sender()
    result = sender.send_email(
        EmailSendRequest(
            to=str(recipient),
            subject=subject,
            text=body,
            html=render_email_html(body),
        )
    )
    if not result.success:
        log_automation_event(
            "automation.email.failed",
            level=logging.ERROR,
            recipient=recipient,
            status=result.status,
            error=result.detail,
        )
        return ActionOutcome(action_type=action.type, status="failed", detail=result.detail or result.status)

    log_automation_event("automation.email.sent", recipient=recipient, subject=subject)
    return ActionOutcome(action_type=action.type, status="success", detail=subject)


def _action_send_sms(
    *,
    user_id: str,
    action: AutomationAction,
    context: dict[str, Any],
    client: Any,
    business_name: str,
    sms_provider: SmsProvider | None,
) -> ActionOutcome:
    recipient = entity_value(client, "phone")
    if not recipient:
        log_automation_event("automation.sms.skipped", reason="no client phone number")
        return ActionOutcome(action_type=action.type, status="skipped", detail="no client phone number")

    content = replace_variables(action.message or "", context, client, business_name)
    provider = sms_provider or get_sms_provider(settings.sms_provider_default)
    result = provider.send_sms(SmsSendRequest(user_id=user_id, recipient=str(recipient), content=content))
    return ActionOutcome(action_type=action.type, status="success", detail=result.message_id)


def _action_create_job(storage: AutomationStorage, *, user_id: str, context: dict[str, Any]) -> ActionOutcome:
    quote = context.get("quote")
    client_id = entity_value(quote, "client_id")
    if quote is None or not client_id:
        return ActionOutcome(action_type="create_job", status="skipped", detail="context has no quote with a client")

    job = storage.create_job(
        {
            "user_id": user_id,
            "client_id": client_id,
            "title": entity_value(quote, "title") or f"Job from Quote {entity_value(quote, 'number') or ''}".strip(),
            "description": entity_value(quote, "description") or "",
            "status": "pending",
            "quote_id": entity_value(quote, "id"),
        }
    )
    log_automation_event("automation.job.created", job_id=job.id, quote_id=entity_value(quote, "id"))
    return ActionOutcome(action_type="create_job", status="success", detail=job.id)


def _action_create_invoice(
    storage: AutomationStorage,
    *,
    user_id: str,
    context: dict[str, Any],
    now: datetime,
) -> ActionOutcome:
    job = context.get("job")
    client_id = entity_value(job, "client_id")
    if job is None or not client_id:
        return ActionOutcome(action_type="create_invoice", status="skipped", detail="context has no job with a client")

    invoice = storage.create_invoice(
        {
            "user_id": user_id,
            "client_id": client_id,
            "job_id": entity_value(job, "id"),
            "number": storage.generate_invoice_number(user_id),
            "status": "draft",
            "issue_date": now,
            "due_date": now + timedelta(days=settings.automation_invoice_due_days),
            "subtotal": Decimal("0.00"),
            "gst_amount": Decimal("0.00"),
            "total": Decimal("0.00"),
        }
    )
    log_automation_event("automation.invoice.created", invoice_id=invoice.id, job_id=entity_value(job, "id"))
    return ActionOutcome(action_type="create_invoice", status="success", detail=invoice.id)


def _action_update_status(
    storage: AutomationStorage,
    *,
    user_id: str,
    action: AutomationAction,
    context: dict[str, Any],
) -> ActionOutcome:
    if not action.new_status:
        return ActionOutcome(action_type=action.type, status="skipped", detail="no new status configured")

    patch = {"status": action.new_status}
    if context.get("invoice") is not None:
        entity_type, entity_id = "invoice", entity_value(context["invoice"], "id")
        storage.update_invoice(entity_id, user_id, patch)
    elif context.get("job") is not None:
        entity_type, entity_id = "job", entity_value(context["job"], "id")
        storage.update_job(entity_id, user_id, patch)
    elif context.get("quote") is not None:
        entity_type, entity_id = "quote", entity_value(context["quote"], "id")
        storage.update_quote(entity_id, user_id, patch)
    else:
        return ActionOutcome(action_type=action.type, status="skipped", detail="context has no entity")

    log_automation_event(
        "automation.status.updated",
        entity_type=entity_type,
        entity_id=entity_id,
        new_status=action.new_status,
    )
    return ActionOutcome(action_type=action.type, status="success", detail=action.new_status)


def _context_entity(context: dict[str, Any]) -> tuple[str | None, Any]:
    for entity_type in _CONTEXT_ENTITY_TYPES:
        entity = context.get(entity_type)
        if entity is not None:
            return entity_type, entity
    return None, None


def _context_client_id(context: dict[str, Any]) -> str | None:
    for entity_type in _CONTEXT_ENTITY_TYPES:
        client_id = entity_value(context.get(entity_type), "client_id")
        if client_id:
            return str(client_id)
    return None


def _short_error(value: Exception | str) -> str:
    text = str(value).strip() or "Automation action failed"
    return text[:255]
