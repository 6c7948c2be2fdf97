#!/usr/bin/env python3
"""Worker process: pops job ids from the Redis `ready_queue` and runs their handlers.

Usage:
  REDIS_URL=redis://localhost:6379/0 python -m scripts.worker

Environment variables:
- JOB_TIMEOUT_SECONDS (default 25), SHUTDOWN_GRACE_SECONDS (default 30)
- WORKER_POLL_SECONDS (default 0.5), WORKER_CONCURRENCY (default 1)
- JOB_MAX_ATTEMPTS, RETRY_BACKOFF, RETRY_BASE_SECONDS, RETRY_MAX_SECONDS
- TESTING=1 to use the in-memory Redis stand-in used by the tests
"""
import asyncio
import signal
from typing import Optional

from deferflow.logging_config import get_logger, setup_logging
from deferflow.runtime import Runtime, build_runtime
from deferflow.worker import Worker

logger = get_logger("scripts.worker")


def build_worker(runtime: Runtime) -> Worker:
    settings = runtime.settings
    return Worker(
        runtime.store,
        runtime.dispatcher,
        runtime.retry_policy,
        job_timeout=settings.job_timeout_seconds,
        poll_interval=settings.worker_poll_seconds,
        concurrency=settings.worker_concurrency,
    )


async def run_worker(runtime: Optional[Runtime] = None):
    runtime = runtime or build_runtime()
    worker = build_worker(runtime)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(
                sig, lambda: asyncio.ensure_future(worker.stop(runtime.settings.shutdown_grace_seconds))
            )
        except (NotImplementedError, RuntimeError):
            # Not available off the main thread or on some platforms.
            pass

    await worker.run()


if __name__ == "__main__":
    runtime = build_runtime()
    setup_logging(runtime.settings.log_level, runtime.settings.log_json)
    try:
        asyncio.run(run_worker(runtime))
    except KeyboardInterrupt:
        logger.info("worker_exiting")
