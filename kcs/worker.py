"""
Start a worker for one stage queue.

    python -m kcs.worker story.assets
    python -m kcs.worker webhooks --beat
"""

import argparse
import logging

from kcs.core.celery_app import celery_app
from kcs.core.config import settings
from kcs.core.logging_config import configure_logging
from kcs.core.stages import OUTBOX_QUEUE, PIPELINE

logger = logging.getLogger(__name__)


def concurrency_for(queue: str) -> int:
    return settings.QUEUE_CONCURRENCY.get(queue, settings.DEFAULT_QUEUE_CONCURRENCY)


def build_argv(queue: str, beat: bool = False) -> list[str]:
    argv = [
        "worker",
        "-Q", queue,
        "--concurrency", str(concurrency_for(queue)),
        "--loglevel", settings.LOG_LEVEL,
        "-n", f"{queue}@%h",
    ]
    if beat:
        argv.append("--beat")
    return argv


def main(args: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run a KCS pipeline worker")
    parser.add_argument("queue", choices=list(PIPELINE) + [OUTBOX_QUEUE])
    parser.add_argument("--beat", action="store_true", help="also run the periodic scheduler")
    options = parser.parse_args(args)

    configure_logging()
    logger.info(f"Starting worker for {options.queue} with concurrency {concurrency_for(options.queue)}")
    celery_app.worker_main(build_argv(options.queue, options.beat))


if __name__ == "__main__":
    main()
