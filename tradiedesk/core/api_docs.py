from tradiedesk.core.observability import error_body, error_code
from tradiedesk.schemas.common import ErrorOut


_ERROR_DESCRIPTIONS: dict[int, str] = {
    401: "Missing or unknown X-User-Id header",
    404: "Automation or template not found",
    409: "Conflict",
    422: "Validation failed",
    500: "Internal server error",
}


def error_responses(*status_codes: int, path: str = "/automations") -> dict[int, dict]:
    """OpenAPI ``responses`` entries for the JSON error envelope."""
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        description = _ERROR_DESCRIPTIONS.get(status_code, "HTTP error")
        example = error_body(
            code=error_code(status_code),
            message=description,
            request_id="request-id",
            path=path,
        )
        responses[status_code] = {
            "model": ErrorOut,
            "description": description,
            "content": {"application/json": {"example": example}},
        }
    return responses
