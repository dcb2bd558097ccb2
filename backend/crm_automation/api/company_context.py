import uuid

from fastapi import HTTPException, Request, status

from crm_automation.infra.logging import update_log_context
from crm_automation.settings import settings

COMPANY_HEADER = "X-Company-Id"


async def require_company_context(request: Request) -> uuid.UUID:
    """Resolve the tenant for this request from the ``X-Company-Id`` header.

    Authentication happens upstream; the gateway forwards the caller's
    company. In dev and test mode a missing header falls back to
    ``default_company_id``.
    """
    raw = request.headers.get(COMPANY_HEADER)
    if not raw:
        if settings.testing or settings.app_env == "dev":
            company_id = settings.default_company_id
        else:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing company context")
    else:
        try:
            company_id = uuid.UUID(raw.strip())
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid company id") from exc
    request.state.current_company_id = company_id
    update_log_context(company_id=str(company_id))
    return company_id
