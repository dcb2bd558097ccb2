import logging
import time
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from crm_automation.api.problem_details import install_problem_handlers, request_id_for
from crm_automation.api.routes_automation_analytics import router as automation_analytics_router
from crm_automation.api.routes_automations import router as automations_router
from crm_automation.api.routes_health import router as health_router
from crm_automation.infra.db import dispose_engine, get_session_factory
from crm_automation.infra.logging import clear_log_context, configure_logging, update_log_context
from crm_automation.infra.metrics import configure_metrics
from crm_automation.services import build_app_services
from crm_automation.settings import settings

request_logger = logging.getLogger("crm_automation.request")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assigns the request id, echoes it back and writes one access log line."""

    async def dispatch(self, request: Request, call_next: Callable):
        started = time.perf_counter()
        request_id = request_id_for(request)
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            # The tenant dependency runs in the endpoint task, so read it back from request state.
            company_id = getattr(request.state, "current_company_id", None)
            latency_ms = int((time.perf_counter() - started) * 1000)
            update_log_context(
                company_id=str(company_id) if company_id else None,
                status_code=status_code,
                latency_ms=latency_ms,
            )
            request_logger.info("request")
            clear_log_context()


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI, metrics_client) -> None:
        super().__init__(app)
        self.metrics = metrics_client

    async def dispatch(self, request: Request, call_next: Callable):
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            route = getattr(request.scope.get("route"), "path", "unmatched")
            self.metrics.record_http_latency(request.method, route, status_code, time.perf_counter() - started)
            if status_code >= 500:
                self.metrics.record_http_5xx(request.method, route)


def _cors_origins(app_settings) -> list[str]:
    if app_settings.cors_origins:
        return list(app_settings.cors_origins)
    if app_settings.app_env == "dev" and not app_settings.strict_cors:
        return ["http://localhost:3000"]
    return []


def create_app(app_settings) -> FastAPI:
    configure_logging()
    metrics_client = configure_metrics(app_settings.metrics_enabled)
    services = build_app_services(app_settings, metrics=metrics_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Tests install their own services and session factory before startup.
        app.state.services = getattr(app.state, "services", None) or services
        app.state.metrics = getattr(app.state, "metrics", None) or app.state.services.metrics
        app.state.db_session_factory = getattr(app.state, "db_session_factory", None) or get_session_factory()
        yield
        await dispose_engine()

    app = FastAPI(title="CRM Automation Engine", version="1.0.0", lifespan=lifespan)
    app.add_middleware(MetricsMiddleware, metrics_client=metrics_client)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(app_settings),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_problem_handlers(app)

    app.include_router(health_router)
    app.include_router(automation_analytics_router)
    app.include_router(automations_router)
    if app_settings.metrics_enabled:
        from crm_automation.api.routes_metrics import router as metrics_router

        app.include_router(metrics_router)
    return app


app = create_app(settings)
