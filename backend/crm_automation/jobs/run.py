import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import async_sessionmaker

from crm_automation.domain.automations import dispatcher, retry
from crm_automation.domain.automations.actions import ActionAdapters
from crm_automation.infra.db import dispose_engine, get_session_factory
from crm_automation.infra.logging import clear_log_context, configure_logging, update_log_context
from crm_automation.infra.metrics import configure_metrics, metrics
from crm_automation.services import build_app_services
from crm_automation.settings import settings

logger = logging.getLogger(__name__)

JOB_TICK = "automation-tick"
JOB_RETRIES = "automation-retries"
DEFAULT_JOBS = (JOB_TICK, JOB_RETRIES)

_Runner = Callable[[async_sessionmaker], Awaitable[dict[str, int]]]


async def run_automation_tick(session_factory: async_sessionmaker, adapters: ActionAdapters) -> dict[str, int]:
    summary = await dispatcher.run_time_tick(session_factory, adapters=adapters)
    return asdict(summary)


async def run_automation_retries(session_factory: async_sessionmaker, adapters: ActionAdapters) -> dict[str, int]:
    async with session_factory() as session:
        summary = await retry.process_retries(session, adapters=adapters)
    return asdict(summary)


def _job_runner(name: str, adapters: ActionAdapters) -> _Runner:
    if name == JOB_TICK:
        return lambda session_factory: run_automation_tick(session_factory, adapters)
    if name == JOB_RETRIES:
        return lambda session_factory: run_automation_retries(session_factory, adapters)
    raise ValueError(f"unknown_job:{name}")


async def _run_job(name: str, session_factory: async_sessionmaker, runner: _Runner) -> None:
    update_log_context(job=name)
    try:
        metrics.record_job_heartbeat(name)
        result = await runner(session_factory)
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
        metrics.record_job_success(name, datetime.now(tz=timezone.utc).timestamp())
    finally:
        clear_log_context()


async def run_jobs_once(
    job_names: list[str], session_factory: async_sessionmaker, adapters: ActionAdapters
) -> dict[str, bool]:
    """Run each job once; a failing job is logged and does not stop the others."""
    outcomes: dict[str, bool] = {}
    for name in job_names:
        runner = _job_runner(name, adapters)
        try:
            await _run_job(name, session_factory, runner)
        except Exception as exc:  # noqa: BLE001
            metrics.record_job_error(name, type(exc).__name__)
            logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
            outcomes[name] = False
        else:
            outcomes[name] = True
    return outcomes


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run automation engine jobs")
    parser.add_argument("--job", action="append", dest="jobs", choices=DEFAULT_JOBS, help="Job name to run")
    parser.add_argument("--interval", type=int, default=60, help="Seconds between loops when not using --once")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    configure_logging()
    metrics_client = configure_metrics(settings.metrics_enabled)
    services = build_app_services(settings, metrics=metrics_client)
    session_factory = get_session_factory()
    job_names = args.jobs or list(DEFAULT_JOBS)

    try:
        while True:
            await run_jobs_once(job_names, session_factory, services.action_adapters)
            if args.once:
                break
            await asyncio.sleep(max(args.interval, 1))
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
