import asyncio
import logging

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from crm_automation.dependencies import get_request_session_factory

router = APIRouter()
logger = logging.getLogger(__name__)

_DB_CHECK_TIMEOUT_SECONDS = 2.0


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.head("/healthz")
async def healthz_head() -> Response:
    return Response(status_code=200)


async def _check_database(request: Request) -> tuple[bool, str | None]:
    session_factory = get_request_session_factory(request)
    try:
        async with session_factory() as session:
            await asyncio.wait_for(session.execute(text("SELECT 1")), timeout=_DB_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        return False, "timeout"
    except SQLAlchemyError as exc:
        logger.warning("readyz_db_check_failed", extra={"extra": {"error_type": type(exc).__name__}})
        return False, type(exc).__name__
    return True, None


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    db_ok, db_error = await _check_database(request)
    payload = {
        "status": "ok" if db_ok else "unavailable",
        "checks": {"database": {"ok": db_ok, "error": db_error}},
    }
    return JSONResponse(status_code=200 if db_ok else 503, content=payload)
