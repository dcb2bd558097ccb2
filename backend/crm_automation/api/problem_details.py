"""RFC 7807 problem documents for the automation API.

Every non-2xx response leaves the service as ``application/problem+json``
carrying the caller's ``request_id`` and, for validation failures, a flat
list of ``{"field", "message"}`` entries.
"""

import logging
import uuid
from http import HTTPStatus
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from crm_automation.domain.errors import DomainError, problem_type
from crm_automation.infra.logging import update_log_context

logger = logging.getLogger(__name__)

PROBLEM_MEDIA_TYPE = "application/problem+json"
VALIDATION_PROBLEM = problem_type("request-validation")
CLIENT_PROBLEM = problem_type("request-rejected")
SERVER_PROBLEM = problem_type("internal-error")

_LOCATION_PREFIXES = {"body", "query", "path", "header"}


def request_id_for(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
    if not request_id:
        request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    return request_id


def problem_response(
    request: Request,
    *,
    status_code: int,
    detail: str,
    title: str | None = None,
    problem: str | None = None,
    errors: list[dict[str, Any]] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    request_id = request_id_for(request)
    if problem is None:
        problem = SERVER_PROBLEM if status_code >= 500 else CLIENT_PROBLEM
    if title is None:
        try:
            title = HTTPStatus(status_code).phrase
        except ValueError:
            title = "Error"
    response = JSONResponse(
        status_code=status_code,
        content={
            "type": problem,
            "title": title,
            "status": status_code,
            "detail": detail,
            "request_id": request_id,
            "errors": errors or [],
        },
        headers=headers,
        media_type=PROBLEM_MEDIA_TYPE,
    )
    response.headers.setdefault("X-Request-ID", request_id)
    return response


def field_errors(exc: RequestValidationError) -> list[dict[str, str]]:
    """Flatten pydantic locations into dotted field paths."""
    flattened = []
    for error in exc.errors():
        parts = [str(part) for part in error.get("loc", ()) if part not in _LOCATION_PREFIXES]
        flattened.append({"field": ".".join(parts) or "body", "message": error.get("msg", "Invalid value")})
    return flattened


def install_problem_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def _on_validation_error(request: Request, exc: RequestValidationError):
        return problem_response(
            request,
            status_code=422,
            title="Validation Error",
            detail="Request validation failed",
            problem=VALIDATION_PROBLEM,
            errors=field_errors(exc),
        )

    @app.exception_handler(DomainError)
    async def _on_domain_error(request: Request, exc: DomainError):
        return problem_response(
            request,
            status_code=exc.status_code,
            title=exc.title,
            detail=exc.detail,
            problem=exc.type,
            errors=exc.errors,
        )

    @app.exception_handler(HTTPException)
    async def _on_http_exception(request: Request, exc: HTTPException):
        detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return problem_response(request, status_code=exc.status_code, detail=detail, headers=exc.headers)

    @app.exception_handler(Exception)
    async def _on_unhandled(request: Request, exc: Exception):
        error_type = type(exc).__name__
        update_log_context(status_code=500, error_type=error_type)
        logger.exception("unhandled_exception", extra={"extra": {"error_type": error_type}})
        return problem_response(request, status_code=500, title="Internal Server Error", detail="Unexpected error")
