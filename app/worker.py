"""
Worker process: task pool plus the once-a-minute validation poller.

    python -m app.worker            # workers and poller
    python -m app.worker --no-poller

Only one process should run the poller.
"""

from __future__ import annotations

import asyncio
import signal

import click
from loguru import logger

import app.models  # noqa: F401
from app.core.config import Settings, settings as default_settings
from app.core.container import Services, build_services
from app.core.db import SessionLocal
from app.core.logging import configure_logger, intercept_standard_logging


async def poll_forever(services: Services, settings: Settings, stopping: asyncio.Event) -> None:
    while not stopping.is_set():
        try:
            await services.poller.run_once()
        except Exception:
            logger.exception("validation poller run failed")
        try:
            await asyncio.wait_for(stopping.wait(), timeout=settings.POLLER_INTERVAL)
        except asyncio.TimeoutError:
            pass


async def main(settings: Settings = default_settings, with_poller: bool = True) -> None:
    configure_logger(settings)
    intercept_standard_logging()

    services = build_services(settings, SessionLocal, source="worker")
    pool = services.worker_pool(settings)
    stopping = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stopping.set)

    pool.start()
    poller = None
    if with_poller and settings.POLLER_ENABLED:
        poller = asyncio.create_task(poll_forever(services, settings, stopping), name="validation-poller")
    logger.info("worker started: {} task worker(s), poller {}", settings.TASK_WORKERS, "on" if poller else "off")

    await stopping.wait()
    logger.info("worker stopping")
    await pool.stop()
    if poller is not None:
        await poller
    close = getattr(services.store, "close", None)
    if close is not None:
        await close()


@click.command()
@click.option("--no-poller", is_flag=True, help="Run task workers only")
def cli(no_poller: bool) -> None:  # noqa: FBT001
    """Run the certificate task worker"""
    asyncio.run(main(with_poller=not no_poller))


if __name__ == "__main__":
    cli()
