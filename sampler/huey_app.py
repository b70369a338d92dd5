"""Sampler - Huey task queue configuration.

Huey setup with SQLite backend so queued chain links survive restarts.

How to run:
1. Start the ingest API:
   uvicorn services.ingest_api.main:app --reload

2. Start the Huey consumer (processes queued chain links):
   huey_consumer.py sampler.huey_app.huey -w 4 -k thread

The consumer executes one chain link per task; on success the scheduler
enqueues the next link of the chain.
"""

from __future__ import annotations

import logging
from pathlib import Path

from huey import SqliteHuey, crontab

from sampler.config import HUEY_DB_PATH, QUEUE_DIR

logger = logging.getLogger(__name__)


def _ensure_queue_dir() -> None:
    """Ensure the queue directory exists."""
    Path(QUEUE_DIR).mkdir(parents=True, exist_ok=True)


# Ensure queue directory exists before creating Huey instance
_ensure_queue_dir()

huey = SqliteHuey(
    name="sampler_pipeline",
    filename=str(HUEY_DB_PATH),
    immediate=False,  # Tasks queued for consumer processing
)


@huey.task()
def run_chain_link_task(chain_id: str, position: int) -> dict:
    """Huey task executing one link of a chain.

    Args:
        chain_id: The chain to advance.
        position: Index of the link within the chain.

    Returns:
        Dict with the link result (for logging/debugging).
    """
    # Import here to avoid circular imports
    from sampler.orchestrator import get_orchestrator

    logger.info("Chain link task started: chain_id=%s, position=%d", chain_id, position)
    result = get_orchestrator().scheduler.run_link(chain_id, position).to_dict()
    logger.info("Chain link task completed: chain_id=%s, result=%s", chain_id, result)
    return result


@huey.periodic_task(crontab(minute="*/5"))
def reclaim_stale_links_task() -> int:
    """Re-dispatch chain links interrupted by a consumer crash."""
    from sampler.orchestrator import get_orchestrator

    return get_orchestrator().scheduler.reclaim_stale_links()


def enqueue_chain_link(chain_id: str, position: int) -> None:
    """Enqueue one chain link.

    Non-blocking: the task is persisted in SQLite and processed when the
    consumer runs. Storage errors propagate to the scheduler, which
    reports them as QueueUnavailable.
    """
    logger.info("Enqueueing chain link: chain_id=%s, position=%d", chain_id, position)
    run_chain_link_task(chain_id, position)
