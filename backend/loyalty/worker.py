"""Standalone accrual worker process (no HTTP surface)."""

import asyncio
import logging
import signal

from loyalty.bridges.accrual import AccrualClient
from loyalty.core.config import get_settings
from loyalty.core.logger import setup_logging
from loyalty.services.accrual_worker import AccrualWorker
from loyalty.services.ledger_store import LedgerStore

logger = logging.getLogger(__name__)


async def serve() -> None:
    from loyalty.db.session import async_session_maker, engine

    settings = get_settings()
    client = AccrualClient()
    worker = AccrualWorker.from_settings(LedgerStore(async_session_maker), client, settings)
    task = asyncio.create_task(worker.run(), name="accrual-worker")

    def _signal_handler(signum: int) -> None:
        logger.info(f"Received signal {signum}, shutting down accrual worker...")
        task.cancel()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, _signal_handler, signum)

    try:
        await task
    except asyncio.CancelledError:
        pass
    finally:
        await client.close()
        await engine.dispose()


def main() -> None:
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    logger.info("accrual worker starting up")
    asyncio.run(serve())


if __name__ == "__main__":  # pragma: no cover
    main()
