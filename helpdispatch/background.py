"""Background tasks: re-enqueue pending requests whose dispatch publish failed."""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.orm import sessionmaker

from helpdispatch.config import settings
from helpdispatch.services.dispatch import DispatchPublisher
from helpdispatch.services.requests import redispatch_unqueued

logger = logging.getLogger("helpdispatch.background")


async def run_sweeps(session_factory: sessionmaker, publisher: DispatchPublisher) -> int:
    async with session_factory() as session:
        return await redispatch_unqueued(session, publisher, settings.redispatch_grace_seconds)


async def background_loop(session_factory: sessionmaker, publisher: DispatchPublisher) -> None:
    """Run background maintenance every ``redispatch_interval_seconds``."""
    while True:
        try:
            requeued = await run_sweeps(session_factory, publisher)
            if requeued:
                logger.info("BG: requeued=%d", requeued)
        except Exception:
            logger.exception("Background task error")
        await asyncio.sleep(settings.redispatch_interval_seconds)
