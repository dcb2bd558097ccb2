import anyio
import pytest

from crm_automation.domain.automations.locks import LeadLockRegistry


@pytest.mark.anyio
async def test_same_lead_is_serialized():
    registry = LeadLockRegistry()
    events: list[str] = []

    async def worker(name: str) -> None:
        async with registry.hold("lead-1"):
            events.append(f"{name}:start")
            await anyio.sleep(0.02)
            events.append(f"{name}:end")

    async with anyio.create_task_group() as tg:
        tg.start_soon(worker, "a")
        tg.start_soon(worker, "b")

    assert events in (
        ["a:start", "a:end", "b:start", "b:end"],
        ["b:start", "b:end", "a:start", "a:end"],
    )
    assert len(registry) == 0


@pytest.mark.anyio
async def test_different_leads_run_concurrently():
    registry = LeadLockRegistry()
    inside: list[str] = []
    overlap: list[int] = []

    async def worker(lead_id: str) -> None:
        async with registry.hold(lead_id):
            inside.append(lead_id)
            await anyio.sleep(0.02)
            overlap.append(len(inside))
            inside.remove(lead_id)

    async with anyio.create_task_group() as tg:
        tg.start_soon(worker, "lead-1")
        tg.start_soon(worker, "lead-2")

    assert max(overlap) == 2


@pytest.mark.anyio
async def test_lock_is_released_when_body_raises():
    registry = LeadLockRegistry()

    with pytest.raises(RuntimeError):
        async with registry.hold("lead-1"):
            assert registry.is_locked("lead-1")
            raise RuntimeError("action failed")

    assert registry.is_locked("lead-1") is False
    assert len(registry) == 0
