"""
Settlement worker entrypoint.

    python -m shipsettle.worker

Startup:
- Create tables (development; production uses alembic)
- Seed the built-in rate cards
- Start the background scheduler
"""
import asyncio
import logging
import signal

from shipsettle.config import settings
from shipsettle.database import init_db, get_db_session
from shipsettle.jobs.scheduler import start_scheduler, shutdown_scheduler
from shipsettle.services.rate_card_service import RateCardService

logger = logging.getLogger(__name__)


async def startup() -> None:
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()

    async with get_db_session() as session:
        seeded = await RateCardService(session).seed_builtin_rate_cards()
    if seeded:
        logger.info(f"Seeded {seeded} built-in rate cards")

    start_scheduler()


async def run() -> None:
    await startup()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass

    try:
        await stop.wait()
    finally:
        shutdown_scheduler()
        logger.info("Shutting down...")


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(run())


if __name__ == "__main__":
    main()
