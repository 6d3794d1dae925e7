# app/core/background.py
"""
Detached jobs run after the response is sent.

Jobs get their own session (the request session is closed by then) and their
failures are logged, never raised: the webhook was already acknowledged.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from fastapi import BackgroundTasks

from app.db.session import job_session

logger = logging.getLogger(__name__)

Job = Callable[..., Awaitable[Any]]


async def run_logged(name: str, job: Job, *args: Any, **kwargs: Any) -> bool:
    """Await the job; returns False (after logging) if it raised."""
    try:
        await job(*args, **kwargs)
    except Exception:
        logger.exception("Background job %s failed", name)
        return False
    logger.info("Background job %s finished", name)
    return True


async def _with_session(job: Job, *args: Any, **kwargs: Any) -> None:
    async with job_session() as db:
        await job(db, *args, **kwargs)


def enqueue(background_tasks: BackgroundTasks, name: str, job: Job, *args: Any, **kwargs: Any) -> None:
    """Schedule job(db, *args, **kwargs) on a fresh session after the response."""
    background_tasks.add_task(run_logged, name, _with_session, job, *args, **kwargs)
    logger.info("Background job %s enqueued", name)
