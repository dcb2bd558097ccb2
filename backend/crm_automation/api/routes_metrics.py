import secrets

from fastapi import APIRouter, HTTPException, Request, Response

from crm_automation.settings import settings

router = APIRouter()


def _scrape_token(request: Request) -> str | None:
    scheme, _, credentials = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials
    return request.query_params.get("token")


@router.get("/metrics")
async def metrics_endpoint(request: Request) -> Response:
    """Prometheus exposition; in prod the scraper must present ``metrics_token``."""
    metrics_client = getattr(request.app.state, "metrics", None)
    if metrics_client is None or not metrics_client.enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")

    if settings.app_env == "prod":
        if not settings.metrics_token:
            raise HTTPException(status_code=500, detail="Metrics token misconfigured")
        provided = _scrape_token(request)
        if provided is None or not secrets.compare_digest(provided, settings.metrics_token):
            raise HTTPException(status_code=401, detail="Unauthorized")

    payload, content_type = metrics_client.render()
    return Response(content=payload, media_type=content_type)
