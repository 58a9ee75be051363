from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from tradiedesk.core.config import settings


def engine_options(database_url: str) -> dict[str, Any]:
    """Keyword arguments for ``create_engine``; SQLite gets no pool sizing."""
    options: dict[str, Any] = {"pool_pre_ping": True}
    if database_url.lower().startswith("sqlite"):
        # The scan worker and request threads share one SQLite file in dev.
        options["connect_args"] = {"check_same_thread": False}
        return options
    options.update(
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout_seconds,
        pool_recycle=settings.db_pool_recycle_seconds,
    )
    return options


engine = create_engine(settings.database_url, **engine_options(settings.database_url))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
