import asyncio
import uuid
from datetime import datetime, timedelta, timezone

from crm_automation.domain.automations.execution_log import append_execution
from crm_automation.domain.automations.db_models import AutomationRule
from crm_automation.domain.leads import service as leads_service
from crm_automation.settings import settings

COMPANY_ID = "00000000-0000-0000-0000-000000000001"
OTHER_COMPANY_ID = "00000000-0000-0000-0000-000000000002"
HEADERS = {"X-Company-Id": COMPANY_ID}
OTHER_HEADERS = {"X-Company-Id": OTHER_COMPANY_ID}


def _rule_payload(**overrides) -> dict:
    payload = {
        "name": "Tag contacted leads",
        "trigger_type": "status_change",
        "trigger_config": {"to_status": "contacted"},
        "action_type": "add_tag",
        "action_config": {"tag": "contacted"},
    }
    payload.update(overrides)
    return payload


def _seed_lead(async_session_maker, company_id: str = COMPANY_ID, **fields) -> str:
    async def _create() -> str:
        async with async_session_maker() as session:
            lead = await leads_service.create_lead(session, uuid.UUID(company_id), **fields)
            await session.commit()
            return lead.lead_id

    return asyncio.run(_create())


def test_rule_crud_endpoints(client):
    created = client.post("/v1/automations", json=_rule_payload(), headers=HEADERS)
    assert created.status_code == 201
    body = created.json()
    rule_id = body["rule_id"]
    assert body["company_id"] == COMPANY_ID
    assert body["is_active"] is True
    assert body["trigger_config"] == {"from_status": "any", "to_status": "contacted"}

    listed = client.get("/v1/automations", headers=HEADERS)
    assert [item["rule_id"] for item in listed.json()] == [rule_id]

    patched = client.patch(f"/v1/automations/{rule_id}", json={"name": "Renamed"}, headers=HEADERS)
    assert patched.status_code == 200
    assert patched.json()["name"] == "Renamed"

    toggled = client.post(f"/v1/automations/{rule_id}/toggle", json={"is_active": False}, headers=HEADERS)
    assert toggled.json()["is_active"] is False
    assert client.get("/v1/automations?active_only=true", headers=HEADERS).json() == []

    deleted = client.delete(f"/v1/automations/{rule_id}", headers=HEADERS)
    assert deleted.status_code == 204
    missing = client.get(f"/v1/automations/{rule_id}", headers=HEADERS)
    assert missing.status_code == 404
    assert missing.headers["content-type"].startswith("application/problem+json")


def test_invalid_rule_returns_problem_details(client):
    response = client.post(
        "/v1/automations",
        json=_rule_payload(action_type="change_status", action_config={"new_status": "archived"}),
        headers={**HEADERS, "X-Request-ID": "req-123"},
    )
    assert response.status_code == 422
    assert response.headers["content-type"].startswith("application/problem+json")
    body = response.json()
    assert body["request_id"] == "req-123"
    assert body["errors"]
    assert body["errors"][0]["field"].startswith("action_config")


def test_request_body_validation_uses_problem_details(client):
    response = client.post("/v1/automations", json={"trigger_type": "status_change"}, headers=HEADERS)
    assert response.status_code == 422
    fields = {error["field"] for error in response.json()["errors"]}
    assert {"name", "action_type"} <= fields


def test_company_header_isolates_rules(client):
    rule_id = client.post("/v1/automations", json=_rule_payload(), headers=HEADERS).json()["rule_id"]

    assert client.get("/v1/automations", headers=OTHER_HEADERS).json() == []
    assert client.get(f"/v1/automations/{rule_id}", headers=OTHER_HEADERS).status_code == 404
    assert client.delete(f"/v1/automations/{rule_id}", headers=OTHER_HEADERS).status_code == 404
    assert client.get(f"/v1/automations/{rule_id}", headers=HEADERS).status_code == 200


def test_invalid_company_header_is_rejected(client):
    response = client.get("/v1/automations", headers={"X-Company-Id": "not-a-uuid"})
    assert response.status_code == 400


def test_missing_company_header_outside_dev_is_unauthorized(client):
    settings.testing = False
    settings.app_env = "prod"
    settings.metrics_token = "metrics-secret"
    response = client.get("/v1/automations")
    assert response.status_code == 401


def test_lead_event_runs_matching_rules(client, async_session_maker):
    rule_id = client.post("/v1/automations", json=_rule_payload(), headers=HEADERS).json()["rule_id"]
    client.post(
        "/v1/automations",
        json=_rule_payload(name="Qualified only", trigger_config={"to_status": "qualified"}),
        headers=HEADERS,
    )
    lead_id = _seed_lead(async_session_maker, name="Ana Lopez", status="contacted")

    response = client.post(
        "/v1/automations/events",
        json={"lead_id": lead_id, "kind": "status_change", "previous_status": "new", "new_status": "contacted"},
        headers=HEADERS,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["matched_rules"] == [rule_id]
    assert [entry["success"] for entry in body["executions"]] == [True]

    executions = client.get(f"/v1/automations/{rule_id}/executions", headers=HEADERS).json()
    assert [entry["lead_id"] for entry in executions] == [lead_id]

    other = client.post(
        "/v1/automations/events",
        json={"lead_id": lead_id, "kind": "status_change", "new_status": "contacted"},
        headers=OTHER_HEADERS,
    )
    assert other.status_code == 404


def test_lead_event_requires_kind_specific_fields(client):
    response = client.post("/v1/automations/events", json={"lead_id": "abc", "kind": "tag_added"}, headers=HEADERS)
    assert response.status_code == 422


def test_run_rule_against_explicit_leads(client, async_session_maker):
    rule_id = client.post(
        "/v1/automations",
        json=_rule_payload(action_type="change_status", action_config={"new_status": "qualified"}),
        headers=HEADERS,
    ).json()["rule_id"]
    lead_id = _seed_lead(async_session_maker, name="Import")
    foreign_id = _seed_lead(async_session_maker, OTHER_COMPANY_ID, name="Foreign")

    response = client.post(
        f"/v1/automations/{rule_id}/run", json={"lead_ids": [lead_id, foreign_id]}, headers=HEADERS
    )
    assert response.status_code == 200
    body = response.json()
    assert body["missing_lead_ids"] == [foreign_id]
    assert len(body["executions"]) == 1
    assert body["executions"][0]["execution_details"]["newStatus"] == "qualified"

    client.post(f"/v1/automations/{rule_id}/toggle", json={"is_active": False}, headers=HEADERS)
    inactive = client.post(f"/v1/automations/{rule_id}/run", json={"lead_ids": [lead_id]}, headers=HEADERS)
    assert inactive.status_code == 422


def test_tick_endpoint_runs_time_rules_once(client, async_session_maker):
    client.post(
        "/v1/automations",
        json=_rule_payload(trigger_type="time_based", trigger_config={"hours": 1}),
        headers=HEADERS,
    )
    _seed_lead(async_session_maker, name="Waiting", created_at=datetime.now(timezone.utc) - timedelta(hours=3))

    first = client.post("/v1/automations/tick", headers=HEADERS)
    second = client.post("/v1/automations/tick", headers=HEADERS)
    assert first.status_code == 200
    assert first.json() == {"leads_scanned": 1, "executions": 1}
    assert second.json() == {"leads_scanned": 1, "executions": 0}


def test_analytics_endpoints_use_camel_case(client, async_session_maker):
    async def _seed() -> None:
        async with async_session_maker() as session:
            rule = AutomationRule(
                rule_id=uuid.uuid4(),
                company_id=uuid.UUID(COMPANY_ID),
                name="Seeded",
                trigger_type="status_change",
                trigger_config={"to_status": "qualified"},
                action_type="change_status",
                action_config={"new_status": "qualified"},
                conditions_json={},
                is_active=True,
            )
            session.add(rule)
            await session.flush()
            append_execution(
                session,
                rule=rule,
                lead_id="lead-1",
                success=True,
                execution_details={"previousStatus": "new", "newStatus": "qualified", "executionTime": 30},
            )
            await session.commit()

    asyncio.run(_seed())

    overview = client.get("/v1/automations/analytics/overview", headers=HEADERS)
    assert overview.status_code == 200
    assert overview.json() == {
        "totalExecutions": 1,
        "successRate": 100.0,
        "averageResponseTime": 30,
        "failureCount": 0,
        "mostActiveRule": "Seeded",
        "totalRules": 1,
        "activeRules": 1,
    }

    timing = client.get("/v1/automations/analytics/timing", headers=HEADERS).json()
    assert len(timing) == 24
    assert set(timing[0]) == {"hour", "executions", "successRate"}

    transfers = client.get("/v1/automations/analytics/transfers", headers=HEADERS).json()
    assert transfers == [
        {"fromStatus": "new", "toStatus": "qualified", "count": 1, "automationDriven": 1, "manualChanges": 0}
    ]

    rules = client.get("/v1/automations/analytics/rules", headers=HEADERS).json()
    assert rules[0]["ruleName"] == "Seeded"
    assert rules[0]["lastExecuted"] is not None

    trends = client.get("/v1/automations/analytics/trends", headers=HEADERS).json()
    assert sum(item["executions"] for item in trends) == 1

    recent = client.get("/v1/automations/analytics/recent?limit=5", headers=HEADERS).json()
    assert recent[0]["automationName"] == "Seeded"
    assert recent[0]["leadName"] == "Unknown Lead"

    recommendations = client.get("/v1/automations/analytics/recommendations", headers=HEADERS).json()
    assert recommendations == []

    assert client.get("/v1/automations/analytics/overview", headers=OTHER_HEADERS).json()["totalExecutions"] == 0


def test_healthz_and_readyz(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.head("/healthz").status_code == 200
    ready = client.get("/readyz")
    assert ready.status_code == 200
    assert ready.json()["checks"]["database"]["ok"] is True


def test_metrics_endpoint_requires_token_in_prod(client):
    client.get("/healthz")
    assert client.get("/metrics").status_code == 200

    settings.app_env = "prod"
    settings.metrics_token = "metrics-secret"
    assert client.get("/metrics").status_code == 401
    authorized = client.get("/metrics", headers={"Authorization": "Bearer metrics-secret"})
    assert authorized.status_code == 200
    assert "http_request_latency_seconds" in authorized.text
