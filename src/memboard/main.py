"""memboard entry point: runs the summarization worker and chunk cleanup."""

import asyncio
import logging
import os
import signal
import sys

from dotenv import find_dotenv, load_dotenv

from .config import load_config
from .logging import configure_logger
from .service import MemoryService

logger = logging.getLogger(__name__)

USAGE = """Usage: memboard [command]

Commands:
  worker    Run the summarization worker and cleanup loop (default)
  cleanup   Delete expired working memory chunks and exit
"""


async def run_worker(service: MemoryService) -> None:
    """Run background processing until SIGINT or SIGTERM."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass  # Windows

    service.start()
    logger.info("memboard worker started (db: %s)", service.config.db_path)
    try:
        await stop_event.wait()
    finally:
        await service.stop()
        logger.info("memboard worker stopped")


def main() -> None:
    """Main entry point."""
    load_dotenv(find_dotenv(usecwd=True))
    logging.basicConfig(
        level=os.environ.get("MEMBOARD_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    command = sys.argv[1] if len(sys.argv) > 1 else "worker"
    if command not in ("worker", "cleanup"):
        print(USAGE, file=sys.stderr)
        sys.exit(2)

    config = load_config()
    configure_logger(config.log_dir)
    service = MemoryService(config)
    try:
        if command == "cleanup":
            deleted = service.manager.cleanup_expired()
            print(f"Deleted {deleted} expired chunks")
            return
        asyncio.run(run_worker(service))
    finally:
        service.close()


if __name__ == "__main__":
    main()
