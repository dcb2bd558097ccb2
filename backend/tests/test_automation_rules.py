import asyncio
import uuid

import pytest
import sqlalchemy as sa

from crm_automation.domain.automations import schemas
from crm_automation.domain.automations import service as rules_service
from crm_automation.domain.automations.db_models import AutomationRule
from crm_automation.domain.automations.execution_log import append_execution
from crm_automation.domain.errors import InvalidConfiguration, NotFound

COMPANY_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
OTHER_COMPANY_ID = uuid.UUID("00000000-0000-0000-0000-000000000002")


def _welcome_rule(**overrides) -> schemas.RuleCreate:
    payload = {
        "name": "Welcome",
        "trigger_type": "status_change",
        "trigger_config": {"to_status": "contacted"},
        "action_type": "send_message",
        "action_config": {"channel": "whatsapp", "message": "Hi {{first_name}}"},
    }
    payload.update(overrides)
    return schemas.RuleCreate(**payload)


def test_rule_crud_lifecycle(async_session_maker):
    async def _run() -> None:
        async with async_session_maker() as session:
            rule = await rules_service.create_rule(session, COMPANY_ID, _welcome_rule())
            await session.commit()
            rule_id = rule.rule_id

        async with async_session_maker() as session:
            rules = await rules_service.list_rules(session, COMPANY_ID)
            assert [item.rule_id for item in rules] == [rule_id]
            assert rules[0].is_active is True
            assert rules[0].trigger_config == {"from_status": "any", "to_status": "contacted"}

            await rules_service.set_active(session, COMPANY_ID, rule_id, False)
            await session.commit()

        async with async_session_maker() as session:
            assert await rules_service.list_rules(session, COMPANY_ID, active_only=True) == []
            await rules_service.delete_rule(session, COMPANY_ID, rule_id)
            await session.commit()

        async with async_session_maker() as session:
            assert await rules_service.list_rules(session, COMPANY_ID) == []
            with pytest.raises(NotFound):
                await rules_service.get_rule(session, COMPANY_ID, rule_id)

    asyncio.run(_run())


def test_rules_are_listed_in_creation_order(async_session_maker):
    async def _run() -> None:
        async with async_session_maker() as session:
            first = await rules_service.create_rule(session, COMPANY_ID, _welcome_rule(name="First"))
            second = await rules_service.create_rule(session, COMPANY_ID, _welcome_rule(name="Second"))
            third = await rules_service.create_rule(session, COMPANY_ID, _welcome_rule(name="Third"))
            await session.commit()

            rules = await rules_service.list_rules(session, COMPANY_ID)
            assert [rule.rule_id for rule in rules] == [first.rule_id, second.rule_id, third.rule_id]

    asyncio.run(_run())


def test_create_rule_rejects_unknown_trigger_type(async_session_maker):
    async def _run() -> None:
        async with async_session_maker() as session:
            with pytest.raises(InvalidConfiguration) as excinfo:
                await rules_service.create_rule(session, COMPANY_ID, _welcome_rule(trigger_type="on_birthday"))
            assert excinfo.value.status_code == 422
            assert excinfo.value.errors[0]["field"] == "trigger_type"
            count = await session.scalar(sa.select(sa.func.count()).select_from(AutomationRule))
            assert count == 0

    asyncio.run(_run())


@pytest.mark.parametrize(
    ("action_type", "action_config"),
    [
        ("send_message", {"channel": "whatsapp"}),
        ("send_message", {"channel": "sms", "message": "hi"}),
        ("change_status", {"new_status": "archived"}),
        ("assign_seller", {"policy": "fixed"}),
        ("add_tag", {}),
        ("notify_user", {"user_id": "owner"}),
    ],
)
def test_create_rule_rejects_malformed_action_config(async_session_maker, action_type, action_config):
    async def _run() -> None:
        async with async_session_maker() as session:
            with pytest.raises(InvalidConfiguration) as excinfo:
                await rules_service.create_rule(
                    session,
                    COMPANY_ID,
                    _welcome_rule(action_type=action_type, action_config=action_config),
                )
            assert excinfo.value.errors

    asyncio.run(_run())


def test_create_rule_rejects_invalid_conditions(async_session_maker):
    async def _run() -> None:
        async with async_session_maker() as session:
            with pytest.raises(InvalidConfiguration):
                await rules_service.create_rule(
                    session,
                    COMPANY_ID,
                    _welcome_rule(conditions={"field": "status", "op": "matches", "value": "new"}),
                )

    asyncio.run(_run())


def test_update_rule_revalidates_configs(async_session_maker):
    async def _run() -> None:
        async with async_session_maker() as session:
            rule = await rules_service.create_rule(session, COMPANY_ID, _welcome_rule())
            await session.commit()

            # switching the kind without a new config is validated against the new kind
            with pytest.raises(InvalidConfiguration):
                await rules_service.update_rule(
                    session, COMPANY_ID, rule.rule_id, schemas.RuleUpdate(action_type="add_tag")
                )

            updated = await rules_service.update_rule(
                session,
                COMPANY_ID,
                rule.rule_id,
                schemas.RuleUpdate(name="Renamed", action_type="add_tag", action_config={"tag": "warm"}),
            )
            await session.commit()
            assert updated.name == "Renamed"
            assert updated.action_type == "add_tag"
            assert updated.action_config == {"tag": "warm"}
            assert updated.trigger_type == "status_change"

    asyncio.run(_run())


def test_rules_are_scoped_by_company(async_session_maker):
    async def _run() -> None:
        async with async_session_maker() as session:
            rule = await rules_service.create_rule(session, COMPANY_ID, _welcome_rule())
            await session.commit()

            assert await rules_service.list_rules(session, OTHER_COMPANY_ID) == []
            with pytest.raises(NotFound):
                await rules_service.get_rule(session, OTHER_COMPANY_ID, rule.rule_id)
            with pytest.raises(NotFound):
                await rules_service.delete_rule(session, OTHER_COMPANY_ID, rule.rule_id)

    asyncio.run(_run())


def test_soft_delete_keeps_execution_history(async_session_maker):
    async def _run() -> None:
        async with async_session_maker() as session:
            rule = await rules_service.create_rule(session, COMPANY_ID, _welcome_rule())
            append_execution(session, rule=rule, lead_id="lead-1", success=True, execution_details={})
            await session.commit()

            await rules_service.delete_rule(session, COMPANY_ID, rule.rule_id)
            await session.commit()

            stored = await session.get(AutomationRule, rule.rule_id)
            assert stored is not None
            assert stored.deleted_at is not None
            assert stored.is_active is False

    asyncio.run(_run())


def test_hard_delete_leaves_log_rows_with_rule_name(async_session_maker):
    async def _run() -> None:
        async with async_session_maker() as session:
            rule = await rules_service.create_rule(session, COMPANY_ID, _welcome_rule(name="Gone soon"))
            entry = append_execution(session, rule=rule, lead_id="lead-1", success=True, execution_details={})
            await session.commit()

            await rules_service.delete_rule(session, COMPANY_ID, rule.rule_id, hard=True)
            await session.commit()

            assert await session.get(AutomationRule, rule.rule_id) is None
            await session.refresh(entry)
            assert entry.rule_name == "Gone soon"

    asyncio.run(_run())


def test_list_rule_executions_newest_first(async_session_maker):
    async def _run() -> None:
        from datetime import datetime, timedelta, timezone

        base = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        async with async_session_maker() as session:
            rule = await rules_service.create_rule(session, COMPANY_ID, _welcome_rule())
            for offset in range(3):
                append_execution(
                    session,
                    rule=rule,
                    lead_id=f"lead-{offset}",
                    success=True,
                    execution_details={},
                    executed_at=base + timedelta(minutes=offset),
                )
            await session.commit()

            entries = await rules_service.list_rule_executions(session, COMPANY_ID, rule.rule_id, limit=2)
            assert [entry.lead_id for entry in entries] == ["lead-2", "lead-1"]

    asyncio.run(_run())
