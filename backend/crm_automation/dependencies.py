from fastapi import Request

from crm_automation.infra.db import get_db_session, get_session_factory
from crm_automation.services import AppServices, build_app_services, resolve_services
from crm_automation.settings import settings

__all__ = ["get_db_session", "get_services", "get_request_session_factory"]


def get_services(request: Request) -> AppServices:
    services = resolve_services(request.app)
    if services is None:
        services = build_app_services(settings)
        request.app.state.services = services
    return services


def get_request_session_factory(request: Request):  # noqa: ANN201
    factory = getattr(request.app.state, "db_session_factory", None)
    return factory or get_session_factory()
