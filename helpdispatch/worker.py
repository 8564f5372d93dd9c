"""Standalone dispatch worker: consume ``request_created`` until told to stop.

Exits with status 1 once the broker reconnect budget is exhausted so the
process supervisor can restart or alert.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys

from helpdispatch.config import Settings, settings
from helpdispatch.database import close_db, get_session_factory, init_db, mask_url, to_async_url
from helpdispatch.queue.connection import QueueConnection
from helpdispatch.queue.consumer import MessageConsumer
from helpdispatch.queue.topology import request_topology
from helpdispatch.services.dispatch import Dispatcher

logger = logging.getLogger("helpdispatch.worker")


def build_consumer(connection: QueueConnection, config: Settings) -> MessageConsumer:
    return MessageConsumer(
        connection,
        request_topology(config),
        Dispatcher(get_session_factory()),
        concurrency=config.consumer_concurrency,
        buffer_size=config.prefetch_count,
        max_attempts=config.max_dispatch_attempts,
    )


async def run_worker(config: Settings = settings) -> int:
    db_url = to_async_url(config.database_url)
    await init_db(db_url)
    logger.info("Database connected: %s", mask_url(db_url))

    connection = QueueConnection.from_settings(config)
    consumer = build_consumer(connection, config)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # not available on Windows event loops
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    exit_code = 0
    try:
        await consumer.start()
        stop_wait = asyncio.create_task(stop.wait())
        fatal_wait = asyncio.create_task(connection.fatal.wait())
        done, pending = await asyncio.wait(
            {stop_wait, fatal_wait}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        if fatal_wait in done:
            logger.critical("Broker unavailable, worker exiting")
            exit_code = 1
    except Exception:
        logger.exception("Worker failed")
        exit_code = 1
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(sig)
        await consumer.stop()
        await connection.close()
        await close_db()
        logger.info("Worker stopped: %s", consumer.stats.snapshot())
    return exit_code


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    sys.exit(asyncio.run(run_worker()))


if __name__ == "__main__":
    main()
