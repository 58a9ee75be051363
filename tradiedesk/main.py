from sqlalchemy import text

from tradiedesk.core.observability import (
    http_exception_handler,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from tradiedesk.core.config import settings
from tradiedesk.db.session import engine
from tradiedesk.routers import automation

_LOCAL_ORIGIN_REGEX = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"


def cors_options() -> dict:
    origins = settings.cors_origins or ["http://localhost:3000"]
    allow_all = "*" in origins
    origin_regex = settings.cors_origin_regex
    if not origin_regex and settings.env.lower().strip() in {"dev", "development", "staging", "stage"}:
        origin_regex = _LOCAL_ORIGIN_REGEX
    return {
        "allow_origins": ["*"] if allow_all else origins,
        "allow_origin_regex": origin_regex,
        "allow_credentials": not allow_all,
        "allow_methods": ["*"],
        "allow_headers": ["*"],
    }


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Workflow automations for trade businesses.\n\n"
        "Every `/automations` endpoint expects an `X-User-Id` header carrying the id of an "
        "active user; identity is established by the upstream gateway.\n\n"
        "Time-based automations run on the background worker "
        "(`arq tradiedesk.worker.WorkerSettings`) or on demand through `POST /automations/process`."
    ),
    swagger_ui_parameters={
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "automation", "description": "Automation rules, template catalog, processing markers and scans."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(CORSMiddleware, **cors_options())

app.include_router(automation.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "redoc": "/redoc",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        return {"ok": False}
    return {"ok": True}
