import asyncio
import json
import uuid
from datetime import datetime, timedelta, timezone

import httpx
import sqlalchemy as sa

from crm_automation.domain.automations import actions, schemas
from crm_automation.domain.automations import service as rules_service
from crm_automation.domain.automations.db_models import AutomationExecution
from crm_automation.domain.leads import service as leads_service
from crm_automation.domain.message_templates import service as templates_service
from crm_automation.domain.notifications import service as notifications_service
from crm_automation.domain.sellers import service as sellers_service
from crm_automation.infra.messaging import HttpMessagingAdapter, MessagingResult
from crm_automation.infra.notifications import PushResult
from crm_automation.shared.circuit_breaker import CircuitBreaker

COMPANY_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")


async def _rule(session, action_type: str, action_config: dict, name: str = "Action rule"):
    return await rules_service.create_rule(
        session,
        COMPANY_ID,
        schemas.RuleCreate(
            name=name,
            trigger_type="status_change",
            trigger_config={"to_status": "any"},
            action_type=action_type,
            action_config=action_config,
        ),
    )


async def _log_count(session) -> int:
    return await session.scalar(sa.select(sa.func.count()).select_from(AutomationExecution))


class RecordingPusher:
    def __init__(self, result: PushResult | None = None) -> None:
        self.pushed: list[dict] = []
        self.result = result or PushResult(status="sent")

    async def push(self, *, company_id, user_id, title, message) -> PushResult:
        self.pushed.append({"company_id": company_id, "user_id": user_id, "title": title, "message": message})
        return self.result


class SlowMessaging:
    async def send_message(self, *, channel: str, recipient: str, body: str) -> MessagingResult:
        await asyncio.sleep(1)
        return MessagingResult(status="sent", provider_msg_id="late")


def _gateway(handler) -> HttpMessagingAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpMessagingAdapter(client, base_url="https://gateway.test", api_token="secret-token")


def test_add_tag_is_idempotent_and_logs_each_attempt(async_session_maker):
    async def _run() -> None:
        async with async_session_maker() as session:
            rule = await _rule(session, "add_tag", {"tag": "hot"})
            lead = await leads_service.create_lead(session, COMPANY_ID, name="Tagged", tags=["hot"])

            entry = await actions.execute(session, rule=rule, lead=lead)
            again = await actions.execute(session, rule=rule, lead=lead)
            await session.commit()

            assert entry.success is True and again.success is True
            assert again.execution_details["alreadyTagged"] is True
            assert lead.tags == ["hot"]
            assert await _log_count(session) == 2

    asyncio.run(_run())


def test_change_status_records_transition(async_session_maker):
    async def _run() -> None:
        async with async_session_maker() as session:
            rule = await _rule(session, "change_status", {"new_status": "qualified"})
            lead = await leads_service.create_lead(
                session,
                COMPANY_ID,
                name="Moving",
                created_at=datetime.now(timezone.utc) - timedelta(days=2),
            )
            entered_before = lead.stage_entered_at

            entry = await actions.execute(session, rule=rule, lead=lead)
            await session.commit()

            assert entry.success is True
            assert entry.error_message is None
            assert entry.execution_details["previousStatus"] == "new"
            assert entry.execution_details["newStatus"] == "qualified"
            assert lead.status == "qualified"
            assert lead.stage_entered_at > entered_before

    asyncio.run(_run())


def test_illegal_status_change_leaves_lead_untouched(async_session_maker):
    async def _run() -> None:
        async with async_session_maker() as session:
            rule = await _rule(session, "change_status", {"new_status": "contacted"})
            lead = await leads_service.create_lead(session, COMPANY_ID, name="Closed", status="won")
            await session.commit()

            entry = await actions.execute(session, rule=rule, lead=lead)
            await session.commit()

            assert entry.success is False
            assert entry.error_message
            assert entry.execution_details["previousStatus"] == "won"
            assert entry.execution_details["newStatus"] == "contacted"
            await session.refresh(lead)
            assert lead.status == "won"
            assert await _log_count(session) == 1

    asyncio.run(_run())


def test_assign_seller_least_loaded(async_session_maker):
    async def _run() -> None:
        async with async_session_maker() as session:
            busy = await sellers_service.create_seller(session, COMPANY_ID, name="Busy")
            free = await sellers_service.create_seller(session, COMPANY_ID, name="Free")
            await sellers_service.create_seller(session, COMPANY_ID, name="Away", is_active=False)
            for index in range(2):
                open_lead = await leads_service.create_lead(session, COMPANY_ID, name=f"Open {index}")
                leads_service.assign_seller(open_lead, busy.seller_id)
            # closed leads do not count toward load
            for index in range(3):
                closed = await leads_service.create_lead(session, COMPANY_ID, name=f"Won {index}", status="won")
                leads_service.assign_seller(closed, free.seller_id)
            rule = await _rule(session, "assign_seller", {"policy": "least_loaded"})
            lead = await leads_service.create_lead(session, COMPANY_ID, name="Incoming")
            await session.commit()

            entry = await actions.execute(session, rule=rule, lead=lead)
            await session.commit()

            assert entry.success is True
            assert lead.assigned_seller_id == free.seller_id
            assert entry.execution_details["sellerId"] == free.seller_id
            assert entry.execution_details["previousSellerId"] is None

    asyncio.run(_run())


def test_assign_seller_without_eligible_seller_fails(async_session_maker):
    async def _run() -> None:
        async with async_session_maker() as session:
            await sellers_service.create_seller(session, COMPANY_ID, name="Away", is_active=False)
            least = await _rule(session, "assign_seller", {"policy": "least_loaded"}, name="Least")
            fixed = await _rule(session, "assign_seller", {"policy": "fixed", "seller_id": "missing"}, name="Fixed")
            lead = await leads_service.create_lead(session, COMPANY_ID, name="Nobody")
            await session.commit()

            first = await actions.execute(session, rule=least, lead=lead)
            second = await actions.execute(session, rule=fixed, lead=lead)
            await session.commit()

            assert first.success is False
            assert first.error_message == "No active sellers available"
            assert second.success is False
            assert "missing" in second.error_message
            assert lead.assigned_seller_id is None

    asyncio.run(_run())


def test_send_message_through_gateway(async_session_maker):
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"id": "wamid-1"})

    async def _run() -> None:
        async with async_session_maker() as session:
            template = await templates_service.create_template(
                session, company_id=COMPANY_ID, name="welcome", body="Hola {{first_name}}, {{unknown}}"
            )
            rule = await _rule(session, "send_message", {"channel": "whatsapp", "template_id": template.template_id})
            lead = await leads_service.create_lead(session, COMPANY_ID, name="Ana Lopez", phone="+34600111222")
            await session.commit()

            adapters = actions.ActionAdapters(messaging=_gateway(handler))
            entry = await actions.execute(session, rule=rule, lead=lead, adapters=adapters)
            await session.commit()

            assert entry.success is True
            assert entry.execution_details["channel"] == "whatsapp"
            assert entry.execution_details["templateId"] == template.template_id
            assert entry.execution_details["providerMessageId"] == "wamid-1"
            assert isinstance(entry.execution_details["executionTime"], int)

    asyncio.run(_run())
    assert len(captured) == 1
    assert str(captured[0].url) == "https://gateway.test/messages"
    assert captured[0].headers["Authorization"] == "Bearer secret-token"
    assert json.loads(captured[0].content) == {
        "channel": "whatsapp",
        "to": "+34600111222",
        "body": "Hola Ana, {{unknown}}",
    }


def test_send_message_provider_error_is_logged_as_retryable(async_session_maker):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "unavailable"})

    async def _run() -> None:
        async with async_session_maker() as session:
            rule = await _rule(session, "send_message", {"channel": "whatsapp", "message": "Hi"})
            lead = await leads_service.create_lead(session, COMPANY_ID, name="Ana", phone="+34600111222")
            await session.commit()

            adapters = actions.ActionAdapters(messaging=_gateway(handler))
            entry = await actions.execute(session, rule=rule, lead=lead, adapters=adapters)
            await session.commit()

            assert entry.success is False
            assert entry.error_message == "provider_status_503"
            assert entry.execution_details["retryable"] is True

    asyncio.run(_run())


def test_send_message_timeout_is_logged(async_session_maker):
    async def _run() -> None:
        async with async_session_maker() as session:
            rule = await _rule(session, "send_message", {"channel": "instagram", "message": "Hey"})
            lead = await leads_service.create_lead(session, COMPANY_ID, name="Ig", instagram_handle="@ana.ig")
            await session.commit()

            adapters = actions.ActionAdapters(messaging=SlowMessaging(), provider_timeout_seconds=0.05)
            entry = await actions.execute(session, rule=rule, lead=lead, adapters=adapters)
            await session.commit()

            assert entry.success is False
            assert entry.error_message == "provider_timeout"
            assert entry.execution_details["channel"] == "instagram"

    asyncio.run(_run())


def test_send_message_with_missing_template_is_not_retryable(async_session_maker):
    async def _run() -> None:
        async with async_session_maker() as session:
            rule = await _rule(session, "send_message", {"channel": "whatsapp", "template_id": 999})
            lead = await leads_service.create_lead(session, COMPANY_ID, name="Ana", phone="+34600111222")
            await session.commit()

            entry = await actions.execute(session, rule=rule, lead=lead)
            await session.commit()

            assert entry.success is False
            assert entry.error_message == "template_not_found"
            assert entry.execution_details["retryable"] is False

    asyncio.run(_run())


def test_notify_user_stores_and_pushes_notification(async_session_maker):
    async def _run() -> None:
        async with async_session_maker() as session:
            rule = await _rule(
                session,
                "notify_user",
                {"user_id": "owner-1", "message": "{{name}} needs a call", "title": "Call back"},
            )
            lead = await leads_service.create_lead(session, COMPANY_ID, name="Ana Lopez")
            await session.commit()

            pusher = RecordingPusher()
            entry = await actions.execute(
                session, rule=rule, lead=lead, adapters=actions.ActionAdapters(notifications=pusher)
            )
            await session.commit()

            assert entry.success is True
            assert entry.execution_details["pushed"] is True
            notifications = await notifications_service.list_notifications(
                session, company_id=COMPANY_ID, user_id="owner-1"
            )
            assert [item.message for item in notifications] == ["Ana Lopez needs a call"]
            assert pusher.pushed == [
                {
                    "company_id": COMPANY_ID,
                    "user_id": "owner-1",
                    "title": "Call back",
                    "message": "Ana Lopez needs a call",
                }
            ]

    asyncio.run(_run())


def test_notify_user_push_failure_is_logged(async_session_maker):
    async def _run() -> None:
        async with async_session_maker() as session:
            rule = await _rule(session, "notify_user", {"user_id": "owner-1", "message": "ping"})
            lead = await leads_service.create_lead(session, COMPANY_ID, name="Ana")
            await session.commit()

            pusher = RecordingPusher(PushResult(status="failed", error_code="push_status_500"))
            entry = await actions.execute(
                session, rule=rule, lead=lead, adapters=actions.ActionAdapters(notifications=pusher)
            )
            await session.commit()

            assert entry.success is False
            assert entry.error_message == "push_status_500"

    asyncio.run(_run())


def test_hanging_provider_opens_the_messaging_circuit(async_session_maker):
    async def hang(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json={"id": "never"})

    async def _run() -> None:
        breaker = CircuitBreaker(name="hanging-gateway", failure_threshold=2, recovery_time=60, timeout_seconds=0.05)
        gateway = HttpMessagingAdapter(
            httpx.AsyncClient(transport=httpx.MockTransport(hang)),
            base_url="https://gateway.test",
            timeout_seconds=0.05,
            breaker=breaker,
        )
        # same deadline as the adapter; the executor must still let the adapter time out first
        adapters = actions.ActionAdapters(messaging=gateway, provider_timeout_seconds=0.05)
        async with async_session_maker() as session:
            rule = await _rule(session, "send_message", {"channel": "whatsapp", "message": "Hi"})
            lead = await leads_service.create_lead(session, COMPANY_ID, name="Ana", phone="+34600111222")
            await session.commit()

            errors = []
            for _ in range(3):
                entry = await actions.execute(session, rule=rule, lead=lead, adapters=adapters)
                await session.commit()
                errors.append(entry.error_message)

        assert errors == ["provider_timeout", "provider_timeout", "circuit_open"]
        assert breaker.state == "open"

    asyncio.run(_run())


def test_messaging_circuit_recovers_after_a_hung_trial(async_session_maker):
    calls = []

    async def flaky(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(500)
        if len(calls) == 2:
            await asyncio.sleep(5)
        return httpx.Response(200, json={"id": "msg-ok"})

    async def _run() -> None:
        breaker = CircuitBreaker(name="recovering-gateway", failure_threshold=1, recovery_time=0.05, timeout_seconds=0.05)
        gateway = HttpMessagingAdapter(
            httpx.AsyncClient(transport=httpx.MockTransport(flaky)),
            base_url="https://gateway.test",
            timeout_seconds=0.05,
            breaker=breaker,
        )
        adapters = actions.ActionAdapters(messaging=gateway, provider_timeout_seconds=0.05)
        async with async_session_maker() as session:
            rule = await _rule(session, "send_message", {"channel": "whatsapp", "message": "Hi"})
            lead = await leads_service.create_lead(session, COMPANY_ID, name="Ana", phone="+34600111222")
            await session.commit()

            outcomes = []
            for _ in range(3):
                entry = await actions.execute(session, rule=rule, lead=lead, adapters=adapters)
                await session.commit()
                outcomes.append(entry.error_message if not entry.success else entry.execution_details["providerMessageId"])
                await asyncio.sleep(0.06)

        assert outcomes == ["provider_status_500", "provider_timeout", "msg-ok"]
        assert breaker.state == "closed"
        assert len(calls) == 3

    asyncio.run(_run())
