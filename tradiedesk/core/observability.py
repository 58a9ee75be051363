import json
import logging
import time
import traceback
from contextvars import ContextVar
from typing import Any
from uuid import uuid4

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")
logger = logging.getLogger("tradiedesk.api")
automation_logger = logging.getLogger("tradiedesk.automations")

_ERROR_CODES = {
    400: "bad_request",
    401: "unauthorized",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "internal_error",
}


def setup_observability() -> None:
    for item in (logger, automation_logger):
        if item.handlers:
            continue
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        item.addHandler(handler)
        item.setLevel(logging.INFO)
        item.propagate = False


def get_request_id() -> str:
    return request_id_ctx.get()


def _emit(target: logging.Logger, level: int, payload: dict[str, Any]) -> None:
    target.log(level, json.dumps(payload, default=str))


def log_automation_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """One JSON line on the automations logger, tagged with the current request id.

    Outside a request (worker runs, tests) the request id is ``"-"``.
    """
    _emit(automation_logger, level, {"event": event, "request_id": get_request_id(), **fields})


def error_code(status_code: int) -> str:
    return _ERROR_CODES.get(status_code, "http_error")


def _request_id_for(request: Request) -> str:
    return (
        getattr(request.state, "request_id", None)
        or request.headers.get("x-request-id")
        or get_request_id()
    )


def error_body(*, code: str, message: str, request_id: str, path: str, details: list[dict] | None = None) -> dict:
    return {
        "error": {
            "code": code,
            "message": message,
            "request_id": request_id,
            "path": path,
            "details": details,
        }
    }


def _error_response(
    request: Request,
    *,
    status_code: int,
    message: str,
    details: list[dict] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content=error_body(
            code=error_code(status_code),
            message=message,
            request_id=_request_id_for(request),
            path=request.url.path,
            details=details,
        ),
    )


async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid4())
    request.state.request_id = request_id
    token = request_id_ctx.set(request_id)
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
    finally:
        _emit(
            logger,
            logging.INFO,
            {
                "event": "request",
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "user_id": request.headers.get("x-user-id"),
                "status_code": status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        request_id_ctx.reset(token)

    response.headers["X-Request-ID"] = request_id
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    _emit(
        logger,
        logging.ERROR,
        {
            "event": "unhandled_exception",
            "request_id": _request_id_for(request),
            "path": request.url.path,
            "error": str(exc),
            "traceback": traceback.format_exc(limit=10),
        },
    )
    return _error_response(request, status_code=500, message="Internal server error")


async def http_exception_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, str):
        message, details = exc.detail, None
    else:
        message, details = "HTTP error", exc.detail
    return _error_response(
        request,
        status_code=exc.status_code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        location = [str(part) for part in err.get("loc", []) if part != "body"]
        details.append(
            {
                "field": ".".join(location) or "body",
                "message": err.get("msg", "Invalid value"),
                "type": err.get("type"),
            }
        )
    return _error_response(request, status_code=422, message="Validation failed", details=details)
