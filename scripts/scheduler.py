#!/usr/bin/env python3
"""Scheduler process: promotes due jobs, recovers stalled ones and fires periodic triggers.

Usage:
  python -m scripts.scheduler

Environment variables:
- REDIS_URL (optional)
- TESTING=1 to use in-memory redis
- POLL_SECONDS (optional, default 0.5)
- ORDER_NOTIFY_EVERY_SECONDS (optional, default 60)
"""
import asyncio
from typing import Optional

from deferflow.logging_config import get_logger, setup_logging
from deferflow.runtime import Runtime, build_runtime
from deferflow.scheduler import Scheduler

logger = get_logger("scripts.scheduler")


def build_scheduler(runtime: Runtime) -> Scheduler:
    return Scheduler(
        runtime.store,
        runtime.queue,
        runtime.retry_policy,
        triggers=runtime.triggers(),
        poll_interval=runtime.settings.poll_seconds,
    )


async def run_scheduler(runtime: Optional[Runtime] = None):
    runtime = runtime or build_runtime()
    await build_scheduler(runtime).run()


if __name__ == "__main__":
    runtime = build_runtime()
    setup_logging(runtime.settings.log_level, runtime.settings.log_json)
    try:
        asyncio.run(run_scheduler(runtime))
    except KeyboardInterrupt:
        logger.info("scheduler_exiting")
