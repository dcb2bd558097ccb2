"""Read-side reports over the execution log and the rule store.

Every function is scoped by ``company_id`` and takes an optional
``start``/``end`` window (inclusive). Calendar dates and hours are computed in
the tenant's timezone; timestamps are stored in UTC.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta, tzinfo
from typing import Literal, Protocol

import sqlalchemy as sa
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from crm_automation.domain.automations import schemas
from crm_automation.domain.automations import service as rules_service
from crm_automation.domain.automations.db_models import AutomationExecution, AutomationRule
from crm_automation.domain.automations.execution_log import list_executions
from crm_automation.domain.leads.db_models import Lead
from crm_automation.settings import settings
from crm_automation.shared.timeutils import as_utc, resolve_timezone, utcnow

UNKNOWN_RULE = "Unknown"
UNKNOWN_LEAD = "Unknown Lead"
UNKNOWN_STATUS = "unknown"
NO_ACTIVE_RULE = "N/A"

_PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


class _Report(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OverallAnalytics(_Report):
    total_executions: int
    success_rate: float
    average_response_time: int
    failure_count: int
    most_active_rule: str
    total_rules: int
    active_rules: int


class ExecutionTrend(_Report):
    date: str
    executions: int
    successful: int
    failed: int


class RulePerformance(_Report):
    rule_id: uuid.UUID
    rule_name: str
    trigger_type: str
    action_type: str
    is_active: bool
    executions: int
    success_rate: float
    average_time: int
    last_executed: datetime | None


class TransferPattern(_Report):
    from_status: str
    to_status: str
    count: int
    automation_driven: int
    manual_changes: int


class HourlyTiming(_Report):
    hour: int
    executions: int
    success_rate: float


class RecentActivity(_Report):
    id: uuid.UUID
    rule_id: uuid.UUID | None
    automation_name: str
    lead_id: str
    lead_name: str
    executed_at: datetime
    success: bool
    error_message: str | None
    execution_time: int | None


class Recommendation(_Report):
    type: Literal["warning", "info", "success"]
    title: str
    description: str
    rule_id: uuid.UUID | None = None
    priority: Literal["high", "medium", "low"]


class ManualTransitionSource(Protocol):
    """Counts status changes made by people rather than automations."""

    async def count_manual_transitions(
        self, company_id: uuid.UUID, start: datetime | None, end: datetime | None
    ) -> dict[tuple[str, str], int]: ...


def _percent(part: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(part / total * 100, 1)


def _execution_time(entry: AutomationExecution) -> int | float | None:
    value = (entry.execution_details or {}).get("executionTime")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _average_ms(entries: list[AutomationExecution]) -> int:
    timings = [timing for timing in (_execution_time(entry) for entry in entries) if timing is not None]
    if not timings:
        return 0
    return int(round(sum(timings) / len(timings)))


def _window(start: datetime | None, end: datetime | None) -> tuple[datetime | None, datetime | None]:
    return (as_utc(start) if start else None, as_utc(end) if end else None)


def _tz(tz: str | None) -> tzinfo:
    return resolve_timezone(tz, settings.automation_default_timezone)


async def _rules_by_id(session: AsyncSession, company_id: uuid.UUID) -> dict[uuid.UUID, AutomationRule]:
    stmt = sa.select(AutomationRule).where(AutomationRule.company_id == company_id)
    return {rule.rule_id: rule for rule in await session.scalars(stmt)}


def _display_name(entry: AutomationExecution, rules: dict[uuid.UUID, AutomationRule]) -> str:
    rule = rules.get(entry.rule_id) if entry.rule_id else None
    if rule is not None:
        return rule.name
    return entry.rule_name or UNKNOWN_RULE


async def overall_analytics(
    session: AsyncSession,
    company_id: uuid.UUID,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
) -> OverallAnalytics:
    start, end = _window(start, end)
    entries = await list_executions(session, company_id, start=start, end=end)
    rules = await _rules_by_id(session, company_id)
    visible = [rule for rule in rules.values() if rule.deleted_at is None]

    total = len(entries)
    successes = sum(1 for entry in entries if entry.success)

    # ties go to the rule seen first in executed_at order
    counts: dict[object, int] = {}
    names: dict[object, str] = {}
    for entry in entries:
        key = entry.rule_id or entry.rule_name
        counts[key] = counts.get(key, 0) + 1
        names.setdefault(key, _display_name(entry, rules))
    most_active = NO_ACTIVE_RULE
    best = 0
    for key, count in counts.items():
        if count > best:
            best = count
            most_active = names[key]

    return OverallAnalytics(
        total_executions=total,
        success_rate=_percent(successes, total),
        average_response_time=_average_ms(entries),
        failure_count=total - successes,
        most_active_rule=most_active,
        total_rules=len(visible),
        active_rules=sum(1 for rule in visible if rule.is_active),
    )


async def execution_trends(
    session: AsyncSession,
    company_id: uuid.UUID,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    days: int | None = None,
    tz: str | None = None,
    now: datetime | None = None,
) -> list[ExecutionTrend]:
    start, end = _window(start, end)
    if start is None:
        start = as_utc(now or utcnow()) - timedelta(days=days or settings.automation_trend_days)
    zone = _tz(tz)
    entries = await list_executions(session, company_id, start=start, end=end)
    buckets: dict[str, list[int]] = defaultdict(lambda: [0, 0])
    for entry in entries:
        local_date = as_utc(entry.executed_at).astimezone(zone).date().isoformat()
        bucket = buckets[local_date]
        bucket[0 if entry.success else 1] += 1
    return [
        ExecutionTrend(date=date, executions=ok + failed, successful=ok, failed=failed)
        for date, (ok, failed) in sorted(buckets.items())
    ]


async def rule_performance(
    session: AsyncSession,
    company_id: uuid.UUID,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[RulePerformance]:
    start, end = _window(start, end)
    rules = await rules_service.list_rules(session, company_id)
    entries = await list_executions(session, company_id, start=start, end=end)
    by_rule: dict[uuid.UUID, list[AutomationExecution]] = defaultdict(list)
    for entry in entries:
        if entry.rule_id is not None:
            by_rule[entry.rule_id].append(entry)

    report = []
    for rule in rules:
        rule_entries = by_rule.get(rule.rule_id, [])
        successes = sum(1 for entry in rule_entries if entry.success)
        last = max((as_utc(entry.executed_at) for entry in rule_entries), default=None)
        report.append(
            RulePerformance(
                rule_id=rule.rule_id,
                rule_name=rule.name,
                trigger_type=rule.trigger_type,
                action_type=rule.action_type,
                is_active=rule.is_active,
                executions=len(rule_entries),
                success_rate=_percent(successes, len(rule_entries)),
                average_time=_average_ms(rule_entries),
                last_executed=last,
            )
        )
    # stable sort keeps creation order among equal counts
    return sorted(report, key=lambda item: -item.executions)


async def transfer_patterns(
    session: AsyncSession,
    company_id: uuid.UUID,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    manual_source: ManualTransitionSource | None = None,
) -> list[TransferPattern]:
    start, end = _window(start, end)
    stmt = sa.select(AutomationExecution).where(
        AutomationExecution.company_id == company_id,
        AutomationExecution.action_type == schemas.ACTION_CHANGE_STATUS,
        AutomationExecution.success.is_(True),
    )
    if start is not None:
        stmt = stmt.where(AutomationExecution.executed_at >= start)
    if end is not None:
        stmt = stmt.where(AutomationExecution.executed_at <= end)
    stmt = stmt.order_by(AutomationExecution.executed_at.asc())
    entries = list(await session.scalars(stmt))

    automated: dict[tuple[str, str], int] = {}
    for entry in entries:
        details = entry.execution_details or {}
        pair = (
            str(details.get("previousStatus") or UNKNOWN_STATUS),
            str(details.get("newStatus") or UNKNOWN_STATUS),
        )
        automated[pair] = automated.get(pair, 0) + 1

    manual: dict[tuple[str, str], int] = {}
    if manual_source is not None:
        manual = await manual_source.count_manual_transitions(company_id, start, end)

    patterns = []
    for pair in [*automated, *(pair for pair in manual if pair not in automated)]:
        driven = automated.get(pair, 0)
        manual_count = manual.get(pair, 0)
        patterns.append(
            TransferPattern(
                from_status=pair[0],
                to_status=pair[1],
                count=driven + manual_count,
                automation_driven=driven,
                manual_changes=manual_count,
            )
        )
    return sorted(patterns, key=lambda item: -item.count)


async def timing_analytics(
    session: AsyncSession,
    company_id: uuid.UUID,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    days: int | None = None,
    tz: str | None = None,
    now: datetime | None = None,
) -> list[HourlyTiming]:
    start, end = _window(start, end)
    if start is None:
        start = as_utc(now or utcnow()) - timedelta(days=days or settings.automation_timing_days)
    zone = _tz(tz)
    entries = await list_executions(session, company_id, start=start, end=end)
    executions = [0] * 24
    successes = [0] * 24
    for entry in entries:
        hour = as_utc(entry.executed_at).astimezone(zone).hour
        executions[hour] += 1
        if entry.success:
            successes[hour] += 1
    return [
        HourlyTiming(hour=hour, executions=executions[hour], success_rate=_percent(successes[hour], executions[hour]))
        for hour in range(24)
    ]


async def recent_activity(
    session: AsyncSession,
    company_id: uuid.UUID,
    *,
    limit: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[RecentActivity]:
    start, end = _window(start, end)
    entries = await list_executions(
        session,
        company_id,
        start=start,
        end=end,
        limit=limit or settings.automation_recent_activity_limit,
        newest_first=True,
    )
    rules = await _rules_by_id(session, company_id)
    lead_ids = sorted({entry.lead_id for entry in entries})
    lead_names: dict[str, str] = {}
    if lead_ids:
        rows = await session.execute(
            sa.select(Lead.lead_id, Lead.name).where(Lead.company_id == company_id, Lead.lead_id.in_(lead_ids))
        )
        lead_names = {lead_id: name for lead_id, name in rows.all()}

    activities = []
    for entry in entries:
        timing = _execution_time(entry)
        activities.append(
            RecentActivity(
                id=entry.execution_id,
                rule_id=entry.rule_id,
                automation_name=_display_name(entry, rules),
                lead_id=entry.lead_id,
                lead_name=lead_names.get(entry.lead_id) or UNKNOWN_LEAD,
                executed_at=as_utc(entry.executed_at),
                success=entry.success,
                error_message=entry.error_message,
                execution_time=int(round(timing)) if timing is not None else None,
            )
        )
    return activities


async def optimization_recommendations(
    session: AsyncSession,
    company_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> list[Recommendation]:
    """Heuristic hints over the trailing window; at most one per rule per condition."""
    current = as_utc(now or utcnow())
    window_days = settings.automation_recommendation_window_days
    threshold = settings.automation_failure_rate_threshold
    minimum = settings.automation_min_executions_for_failure_check

    rules = await rules_service.list_rules(session, company_id)
    entries = await list_executions(session, company_id, start=current - timedelta(days=window_days), end=current)
    totals: dict[uuid.UUID, int] = defaultdict(int)
    failures: dict[uuid.UUID, int] = defaultdict(int)
    for entry in entries:
        if entry.rule_id is None:
            continue
        totals[entry.rule_id] += 1
        if not entry.success:
            failures[entry.rule_id] += 1

    recommendations: list[Recommendation] = []
    for rule in rules:
        if not rule.is_active:
            recommendations.append(
                Recommendation(
                    type="info",
                    title="Inactive rule",
                    description=f'The rule "{rule.name}" is inactive and is not being executed.',
                    rule_id=rule.rule_id,
                    priority="low",
                )
            )
            continue
        total = totals.get(rule.rule_id, 0)
        if total == 0:
            recommendations.append(
                Recommendation(
                    type="info",
                    title="No recent activity",
                    description=f'The rule "{rule.name}" has not run in the last {window_days} days.',
                    rule_id=rule.rule_id,
                    priority="medium",
                )
            )
            continue
        failure_rate = failures.get(rule.rule_id, 0) / total * 100
        if total >= minimum and failure_rate > threshold:
            recommendations.append(
                Recommendation(
                    type="warning",
                    title="High failure rate",
                    description=(
                        f'The rule "{rule.name}" failed {failure_rate:.1f}% of the time '
                        f"in the last {window_days} days."
                    ),
                    rule_id=rule.rule_id,
                    priority="high",
                )
            )
    return sorted(recommendations, key=lambda item: _PRIORITY_ORDER[item.priority])
