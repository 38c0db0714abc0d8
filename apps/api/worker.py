"""Standalone sweep process: runs the match and idle loops without the HTTP API."""

import asyncio
import logging

from services.scheduler import start_sweep_tasks, stop_sweep_tasks

logger = logging.getLogger(__name__)


async def _run() -> None:
    tasks = start_sweep_tasks()
    if not tasks:
        logger.warning("No sweep loops enabled; exiting")
        return
    try:
        await asyncio.gather(*tasks)
    finally:
        await stop_sweep_tasks(tasks)


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(_run())


if __name__ == "__main__":
    main()
