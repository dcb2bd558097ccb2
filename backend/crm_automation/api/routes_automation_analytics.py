from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from crm_automation.api.company_context import require_company_context
from crm_automation.dependencies import get_db_session
from crm_automation.domain.automations import analytics

router = APIRouter(prefix="/v1/automations/analytics", tags=["automation-analytics"])


@router.get("/overview", response_model=analytics.OverallAnalytics)
async def get_overview(
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    company_id: uuid.UUID = Depends(require_company_context),
    session: AsyncSession = Depends(get_db_session),
) -> analytics.OverallAnalytics:
    return await analytics.overall_analytics(session, company_id, start=start, end=end)


@router.get("/trends", response_model=list[analytics.ExecutionTrend])
async def get_trends(
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    days: int | None = Query(None, ge=1, le=366),
    tz: str | None = Query(None),
    company_id: uuid.UUID = Depends(require_company_context),
    session: AsyncSession = Depends(get_db_session),
) -> list[analytics.ExecutionTrend]:
    return await analytics.execution_trends(session, company_id, start=start, end=end, days=days, tz=tz)


@router.get("/rules", response_model=list[analytics.RulePerformance])
async def get_rule_performance(
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    company_id: uuid.UUID = Depends(require_company_context),
    session: AsyncSession = Depends(get_db_session),
) -> list[analytics.RulePerformance]:
    return await analytics.rule_performance(session, company_id, start=start, end=end)


@router.get("/transfers", response_model=list[analytics.TransferPattern])
async def get_transfer_patterns(
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    company_id: uuid.UUID = Depends(require_company_context),
    session: AsyncSession = Depends(get_db_session),
) -> list[analytics.TransferPattern]:
    return await analytics.transfer_patterns(session, company_id, start=start, end=end)


@router.get("/timing", response_model=list[analytics.HourlyTiming])
async def get_timing(
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    days: int | None = Query(None, ge=1, le=366),
    tz: str | None = Query(None),
    company_id: uuid.UUID = Depends(require_company_context),
    session: AsyncSession = Depends(get_db_session),
) -> list[analytics.HourlyTiming]:
    return await analytics.timing_analytics(session, company_id, start=start, end=end, days=days, tz=tz)


@router.get("/recent", response_model=list[analytics.RecentActivity])
async def get_recent_activity(
    limit: int | None = Query(None, ge=1, le=200),
    company_id: uuid.UUID = Depends(require_company_context),
    session: AsyncSession = Depends(get_db_session),
) -> list[analytics.RecentActivity]:
    return await analytics.recent_activity(session, company_id, limit=limit)


@router.get("/recommendations", response_model=list[analytics.Recommendation])
async def get_recommendations(
    company_id: uuid.UUID = Depends(require_company_context),
    session: AsyncSession = Depends(get_db_session),
) -> list[analytics.Recommendation]:
    return await analytics.optimization_recommendations(session, company_id)
