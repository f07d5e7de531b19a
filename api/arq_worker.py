"""
Publication Approvals — arq Worker Entry Point

This module is the CMD target for the worker container. It delivers
workflow triggers enqueued by the API and consumes the change feed
(Change Relay + Resumption Bridge) on a cron schedule.

Usage:
    python -m api.arq_worker

    # Or via arq CLI:
    arq api.arq_worker.WorkerSettings
"""

from __future__ import annotations

import asyncio
import logging
import os
from concurrent.futures import ThreadPoolExecutor

from arq import cron, run_worker
from arq.connections import RedisSettings

from approvals.events import EventEnvelope
from approvals import __version__
from approvals.runtime import ApprovalRuntime
from infra.config import ApprovalsConfig, load_config
from infra.logging import configure_logging

logger = logging.getLogger("publication_approvals.arq_worker")


def _load_worker_config() -> ApprovalsConfig:
    return ApprovalsConfig.from_dict(
        load_config(os.environ.get("PA_CONFIG", "config/approvals.yaml"))
    )


async def deliver_trigger_job(ctx: dict, *, envelope: dict):
    """
    arq task function. Runs trigger delivery in the thread pool so the
    retry backoff never blocks the event loop.
    """
    runtime: ApprovalRuntime = ctx["runtime"]
    env = EventEnvelope.from_dict(envelope)
    loop = asyncio.get_running_loop()
    outcome = await loop.run_in_executor(ctx["pool"], runtime.dispatcher.deliver, env)
    if outcome.delivered:
        logger.info("Trigger %s started %s", env.event_id, outcome.instance.instance_id)
        return outcome.instance.instance_id
    logger.error("Trigger %s dead-lettered: %s", env.event_id, outcome.dead_letter_reason)
    return None


async def poll_feeds(ctx: dict):
    """Cron: drain the change feed for the relay and the bridge."""
    runtime: ApprovalRuntime = ctx["runtime"]
    loop = asyncio.get_running_loop()
    rnd = await loop.run_in_executor(ctx["pool"], runtime.pump)
    if rnd.errors:
        logger.error("Feed poll finished with %d error(s)", len(rnd.errors))
    return rnd.delivered


async def sweep_suspended(ctx: dict):
    """Cron: expire instances suspended past the configured timeout."""
    runtime: ApprovalRuntime = ctx["runtime"]
    loop = asyncio.get_running_loop()
    expired = await loop.run_in_executor(ctx["pool"], runtime.sweep)
    return len(expired)


async def startup(ctx: dict):
    """arq startup hook — build the runtime and thread pool."""
    config = _load_worker_config()
    configure_logging(level=config.log_level, namespace=config.service_namespace, version=__version__)
    ctx["runtime"] = ApprovalRuntime(config, dispatch_triggers=False)
    ctx["pool"] = ThreadPoolExecutor(
        max_workers=config.max_in_flight,
        thread_name_prefix="pa_worker",
    )
    logger.info("arq worker started: db=%s", config.db_path)


async def shutdown(ctx: dict):
    """arq shutdown hook — clean up thread pool and runtime."""
    pool = ctx.get("pool")
    if pool:
        pool.shutdown(wait=True)
    runtime = ctx.get("runtime")
    if runtime:
        runtime.close()
    logger.info("arq worker shutdown complete")


class WorkerSettings:
    """arq worker configuration."""
    functions = [deliver_trigger_job]
    cron_jobs = [
        cron(poll_feeds, second=set(range(0, 60, 5)), run_at_startup=True),
        cron(sweep_suspended, minute=set(range(0, 60, 5))),
    ]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = int(os.environ.get("PA_MAX_JOBS", "5"))
    job_timeout = int(os.environ.get("PA_JOB_TIMEOUT", "300"))
    redis_settings = RedisSettings.from_dsn(
        os.environ.get("REDIS_URL", ApprovalsConfig().redis_url)
    )


if __name__ == "__main__":
    run_worker(WorkerSettings)
