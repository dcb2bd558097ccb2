from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from crm_automation.api.company_context import require_company_context
from crm_automation.dependencies import get_db_session, get_request_session_factory, get_services
from crm_automation.domain.automations import dispatcher, schemas, service
from crm_automation.domain.automations.triggers import LeadEvent
from crm_automation.services import AppServices
from crm_automation.settings import settings

router = APIRouter(tags=["automations"])


def _executions(entries) -> list[schemas.ExecutionResponse]:  # noqa: ANN001
    return [schemas.ExecutionResponse.model_validate(entry) for entry in entries]


@router.get("/v1/automations", response_model=list[schemas.RuleResponse])
async def list_automations(
    active_only: bool = Query(False),
    company_id: uuid.UUID = Depends(require_company_context),
    session: AsyncSession = Depends(get_db_session),
) -> list[schemas.RuleResponse]:
    rules = await service.list_rules(session, company_id, active_only=active_only)
    return [schemas.RuleResponse.model_validate(rule) for rule in rules]


@router.post(
    "/v1/automations",
    response_model=schemas.RuleResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_automation(
    payload: schemas.RuleCreate,
    company_id: uuid.UUID = Depends(require_company_context),
    session: AsyncSession = Depends(get_db_session),
) -> schemas.RuleResponse:
    rule = await service.create_rule(session, company_id, payload)
    await session.commit()
    await session.refresh(rule)
    return schemas.RuleResponse.model_validate(rule)


@router.get("/v1/automations/{rule_id}", response_model=schemas.RuleResponse)
async def get_automation(
    rule_id: uuid.UUID,
    company_id: uuid.UUID = Depends(require_company_context),
    session: AsyncSession = Depends(get_db_session),
) -> schemas.RuleResponse:
    rule = await service.get_rule(session, company_id, rule_id)
    return schemas.RuleResponse.model_validate(rule)


@router.patch("/v1/automations/{rule_id}", response_model=schemas.RuleResponse)
async def update_automation(
    rule_id: uuid.UUID,
    payload: schemas.RuleUpdate,
    company_id: uuid.UUID = Depends(require_company_context),
    session: AsyncSession = Depends(get_db_session),
) -> schemas.RuleResponse:
    rule = await service.update_rule(session, company_id, rule_id, payload)
    await session.commit()
    await session.refresh(rule)
    return schemas.RuleResponse.model_validate(rule)


@router.post("/v1/automations/{rule_id}/toggle", response_model=schemas.RuleResponse)
async def toggle_automation(
    rule_id: uuid.UUID,
    payload: schemas.RuleToggleRequest,
    company_id: uuid.UUID = Depends(require_company_context),
    session: AsyncSession = Depends(get_db_session),
) -> schemas.RuleResponse:
    rule = await service.set_active(session, company_id, rule_id, payload.is_active)
    await session.commit()
    await session.refresh(rule)
    return schemas.RuleResponse.model_validate(rule)


@router.delete("/v1/automations/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_automation(
    rule_id: uuid.UUID,
    hard: bool = Query(False),
    company_id: uuid.UUID = Depends(require_company_context),
    session: AsyncSession = Depends(get_db_session),
) -> Response:
    await service.delete_rule(session, company_id, rule_id, hard=hard)
    await session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/v1/automations/{rule_id}/executions", response_model=list[schemas.ExecutionResponse])
async def list_automation_executions(
    rule_id: uuid.UUID,
    limit: int | None = Query(None, ge=1, le=500),
    company_id: uuid.UUID = Depends(require_company_context),
    session: AsyncSession = Depends(get_db_session),
) -> list[schemas.ExecutionResponse]:
    entries = await service.list_rule_executions(
        session, company_id, rule_id, limit=limit or settings.automation_rule_log_limit
    )
    return _executions(entries)


@router.post("/v1/automations/{rule_id}/run", response_model=schemas.RunRuleResponse)
async def run_automation(
    rule_id: uuid.UUID,
    payload: schemas.RunRuleRequest,
    company_id: uuid.UUID = Depends(require_company_context),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> schemas.RunRuleResponse:
    executions, missing = await dispatcher.run_rule_for_leads(
        session,
        company_id,
        rule_id,
        payload.lead_ids,
        adapters=services.action_adapters,
        locks=services.locks,
    )
    return schemas.RunRuleResponse(rule_id=rule_id, executions=_executions(executions), missing_lead_ids=missing)


@router.post("/v1/automations/events", response_model=schemas.LeadEventResponse)
async def handle_lead_event(
    payload: schemas.LeadEventRequest,
    company_id: uuid.UUID = Depends(require_company_context),
    session: AsyncSession = Depends(get_db_session),
    services: AppServices = Depends(get_services),
) -> schemas.LeadEventResponse:
    event = LeadEvent(
        kind=payload.kind,
        lead_id=payload.lead_id,
        previous_status=payload.previous_status,
        new_status=payload.new_status,
        tag=payload.tag,
    )
    result = await dispatcher.handle_lead_event(
        session, company_id, event, adapters=services.action_adapters, locks=services.locks
    )
    return schemas.LeadEventResponse(
        lead_id=result.lead_id,
        matched_rules=result.matched_rule_ids,
        executions=_executions(result.executions),
    )


@router.post("/v1/automations/tick", response_model=schemas.TickResponse)
async def run_tick(
    company_id: uuid.UUID = Depends(require_company_context),
    session_factory=Depends(get_request_session_factory),  # noqa: ANN001
    services: AppServices = Depends(get_services),
) -> schemas.TickResponse:
    summary = await dispatcher.run_time_tick(
        session_factory,
        company_id=company_id,
        adapters=services.action_adapters,
        locks=services.locks,
    )
    return schemas.TickResponse(leads_scanned=summary.leads_scanned, executions=summary.executions)
