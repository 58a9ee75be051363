import re
from datetime import datetime, timezone
from typing import Any, ContextManager, Protocol

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, SessionTransaction

from tradiedesk.core.config import settings
from tradiedesk.core.dates import ensure_utc
from tradiedesk.core.id_utils import generate_reference_suffix, generate_shortuuid
from tradiedesk.core.observability import log_automation_event
from tradiedesk.models.automation import Automation, AutomationLog
from tradiedesk.models.client import Client
from tradiedesk.models.invoice import Invoice
from tradiedesk.models.job import Job
from tradiedesk.models.notification import Notification
from tradiedesk.models.quote import Quote
from tradiedesk.models.user import BusinessSettings, User


_INVOICE_SEQUENCE_RE = re.compile(r"\d{4}-(\d+)(?:-[A-Z0-9]+)?$")
_UPSERT_DIALECTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


class AutomationStorage(Protocol):
    """Everything the automation engine reads or writes."""

    def get_all_users_with_automations(self) -> list[str]: ...

    def get_automations(self, user_id: str) -> list[Automation]: ...

    def get_quotes(self, user_id: str) -> list[Quote]: ...

    def get_jobs(self, user_id: str) -> list[Job]: ...

    def get_invoices(self, user_id: str) -> list[Invoice]: ...

    def get_quote(self, quote_id: str, user_id: str) -> Quote | None: ...

    def get_job(self, job_id: str, user_id: str) -> Job | None: ...

    def get_invoice(self, invoice_id: str, user_id: str) -> Invoice | None: ...

    def get_client(self, client_id: str, user_id: str) -> Client | None: ...

    def get_user(self, user_id: str) -> User | None: ...

    def get_business_settings(self, user_id: str) -> BusinessSettings | None: ...

    def has_automation_processed(self, automation_id: str, entity_type: str, entity_id: str) -> bool: ...

    def log_automation_processed(
        self,
        automation_id: str,
        entity_type: str,
        entity_id: str,
        result: str,
        error_message: str | None = None,
    ) -> None: ...

    def create_job(self, data: dict[str, Any]) -> Job: ...

    def create_invoice(self, data: dict[str, Any]) -> Invoice: ...

    def generate_invoice_number(self, user_id: str) -> str: ...

    def update_invoice(self, invoice_id: str, user_id: str, patch: dict[str, Any]) -> Invoice | None: ...

    def update_job(self, job_id: str, user_id: str, patch: dict[str, Any]) -> Job | None: ...

    def update_quote(self, quote_id: str, user_id: str, patch: dict[str, Any]) -> Quote | None: ...

    def create_notification(self, data: dict[str, Any]) -> Notification: ...

    def get_automation_logs(self, user_id: str, limit: int = 50) -> list[AutomationLog]: ...

    def savepoint(self) -> ContextManager[Any]: ...


class SqlAutomationStorage:
    """SQLAlchemy-backed storage. Writes are flushed; the caller owns the commit.

    ``savepoint()`` scopes a failed write to its own nested transaction so the
    session stays usable for the rest of the scan.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_all_users_with_automations(self) -> list[str]:
        rows = self.db.execute(
            select(Automation.user_id)
            .where(Automation.is_active.is_(True))
            .distinct()
            .order_by(Automation.user_id.asc())
        ).scalars().all()
        return list(rows)

    def get_automations(self, user_id: str) -> list[Automation]:
        return list(
            self.db.execute(
                select(Automation)
                .where(Automation.user_id == user_id)
                .order_by(Automation.created_at.desc(), Automation.id.asc())
            ).scalars().all()
        )

    def get_quotes(self, user_id: str) -> list[Quote]:
        return list(
            self.db.execute(
                select(Quote).where(Quote.user_id == user_id).order_by(Quote.created_at.asc(), Quote.id.asc())
            ).scalars().all()
        )

    def get_jobs(self, user_id: str) -> list[Job]:
        return list(
            self.db.execute(
                select(Job).where(Job.user_id == user_id).order_by(Job.created_at.asc(), Job.id.asc())
            ).scalars().all()
        )

    def get_invoices(self, user_id: str) -> list[Invoice]:
        return list(
            self.db.execute(
                select(Invoice).where(Invoice.user_id == user_id).order_by(Invoice.created_at.asc(), Invoice.id.asc())
            ).scalars().all()
        )

    def get_quote(self, quote_id: str, user_id: str) -> Quote | None:
        return self.db.execute(
            select(Quote).where(Quote.id == quote_id, Quote.user_id == user_id)
        ).scalar_one_or_none()

    def get_job(self, job_id: str, user_id: str) -> Job | None:
        return self.db.execute(
            select(Job).where(Job.id == job_id, Job.user_id == user_id)
        ).scalar_one_or_none()

    def get_invoice(self, invoice_id: str, user_id: str) -> Invoice | None:
        return self.db.execute(
            select(Invoice).where(Invoice.id == invoice_id, Invoice.user_id == user_id)
        ).scalar_one_or_none()

    def get_client(self, client_id: str, user_id: str) -> Client | None:
        return self.db.execute(
            select(Client).where(Client.id == client_id, Client.user_id == user_id)
        ).scalar_one_or_none()

    def get_user(self, user_id: str) -> User | None:
        return self.db.get(User, user_id)

    def get_business_settings(self, user_id: str) -> BusinessSettings | None:
        return self.db.execute(
            select(BusinessSettings).where(BusinessSettings.user_id == user_id)
        ).scalar_one_or_none()

    def has_automation_processed(self, automation_id: str, entity_type: str, entity_id: str) -> bool:
        existing = self.db.execute(
            select(AutomationLog.id)
            .where(
                AutomationLog.automation_id == automation_id,
                AutomationLog.entity_type == entity_type,
                AutomationLog.entity_id == entity_id,
            )
            .limit(1)
        ).scalar_one_or_none()
        return existing is not None

    def log_automation_processed(
        self,
        automation_id: str,
        entity_type: str,
        entity_id: str,
        result: str,
        error_message: str | None = None,
    ) -> None:
        values = {
            "id": generate_shortuuid(),
            "automation_id": automation_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "result": result,
            "error_message": error_message[:255] if error_message else None,
            "processed_at": datetime.now(timezone.utc),
        }
        insert = _UPSERT_DIALECTS.get(self.db.get_bind().dialect.name)
        if insert is not None:
            # Insert-or-skip on (automation_id, entity_type, entity_id).
            self.db.execute(insert(AutomationLog).values(**values).on_conflict_do_nothing())
            return

        if self.has_automation_processed(automation_id, entity_type, entity_id):
            log_automation_event(
                "automation.marker.duplicate",
                automation_id=automation_id,
                entity_type=entity_type,
                entity_id=entity_id,
            )
            return
        self.db.add(AutomationLog(**values))
        self.db.flush()

    def create_job(self, data: dict[str, Any]) -> Job:
        job = Job(id=generate_shortuuid(), **data)
        self.db.add(job)
        self.db.flush()
        return job

    def create_invoice(self, data: dict[str, Any]) -> Invoice:
        invoice = Invoice(id=generate_shortuuid(), **data)
        self.db.add(invoice)
        self.db.flush()
        return invoice

    def generate_invoice_number(self, user_id: str) -> str:
        business_settings = self.get_business_settings(user_id)
        prefix = (business_settings.invoice_prefix if business_settings else None) or settings.invoice_number_prefix
        now = datetime.now(timezone.utc)

        rows = self.db.execute(
            select(Invoice.number, Invoice.created_at).where(Invoice.user_id == user_id)
        ).all()
        next_number = 1
        for number, created_at in rows:
            created = ensure_utc(created_at)
            if created is not None and created.year != now.year:
                continue
            match = _INVOICE_SEQUENCE_RE.search(number or "")
            if match:
                next_number = max(next_number, int(match.group(1)) + 1)

        # Random suffix keeps numbers globally unique across users.
        return f"{prefix}{now.year}-{next_number:03d}-{generate_reference_suffix(4)}"

    def update_invoice(self, invoice_id: str, user_id: str, patch: dict[str, Any]) -> Invoice | None:
        return self._apply_patch(self.get_invoice(invoice_id, user_id), patch)

    def update_job(self, job_id: str, user_id: str, patch: dict[str, Any]) -> Job | None:
        return self._apply_patch(self.get_job(job_id, user_id), patch)

    def update_quote(self, quote_id: str, user_id: str, patch: dict[str, Any]) -> Quote | None:
        return self._apply_patch(self.get_quote(quote_id, user_id), patch)

    def create_notification(self, data: dict[str, Any]) -> Notification:
        notification = Notification(id=generate_shortuuid(), **data)
        self.db.add(notification)
        self.db.flush()
        return notification

    def get_automation_logs(self, user_id: str, limit: int = 50) -> list[AutomationLog]:
        return list(
            self.db.execute(
                select(AutomationLog)
                .join(Automation, Automation.id == AutomationLog.automation_id)
                .where(Automation.user_id == user_id)
                .order_by(AutomationLog.processed_at.desc(), AutomationLog.id.asc())
                .limit(limit)
            ).scalars().all()
        )

    def _apply_patch(self, entity: Any, patch: dict[str, Any]) -> Any:
        if entity is None:
            return None
        for key, value in patch.items():
            if not hasattr(entity, key):
                raise ValueError(f"Unknown field '{key}' for {type(entity).__name__}")
            setattr(entity, key, value)
        self.db.flush()
        return entity

    def savepoint(self) -> SessionTransaction:
        return self.db.begin_nested()
