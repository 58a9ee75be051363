"""
arq background worker for the time-based automation scan.

Run with: arq tradiedesk.worker.WorkerSettings
"""

from arq.connections import RedisSettings
from arq.cron import cron

import tradiedesk.models  # noqa: F401
from tradiedesk.core.config import settings
from tradiedesk.core.observability import automation_logger, log_automation_event, setup_observability
from tradiedesk.db.session import SessionLocal
from tradiedesk.services.automation_service import process_time_based_automations
from tradiedesk.services.automation_storage import SqlAutomationStorage


def get_redis_settings() -> RedisSettings:
    return RedisSettings.from_dsn(settings.redis_url)


async def process_time_based_automations_task(ctx):
    """
    Cron job: scan every user with an active automation and run due actions.

    Each scan commits once at the end. A failed database write inside an
    entity or action only rolls back its own savepoint, and that entity is
    still marked. If the commit itself fails, the database work is lost, but
    emails and SMS already sent are not undone.
    """
    log_automation_event("automation.worker.scan_started", job_id=ctx.get("job_id"))

    db = SessionLocal()
    try:
        summary = process_time_based_automations(SqlAutomationStorage(db))
        db.commit()
    except Exception as exc:
        db.rollback()
        automation_logger.exception("Automation scan failed: %s", exc)
        raise
    finally:
        db.close()

    return {"processed": summary.processed, "errors": summary.errors}


async def startup(ctx):
    setup_observability()
    log_automation_event(
        "automation.worker.started",
        scan_interval_minutes=settings.automation_scan_interval_minutes,
        timezone=settings.automation_timezone,
    )


class WorkerSettings:
    """arq worker settings."""

    functions = [process_time_based_automations_task]
    redis_settings = get_redis_settings()
    on_startup = startup

    max_jobs = settings.worker_max_jobs
    job_timeout = settings.worker_job_timeout_seconds
    max_tries = 1

    cron_jobs = [
        cron(
            process_time_based_automations_task,
            minute=set(range(0, 60, settings.automation_scan_interval_minutes)),
            run_at_startup=True,
        ),
    ]
