"""Background task dispatch — start pipeline stages after the caller commits.

Purpose:
  Parse, match, draft generation and campaign execution run as asyncio tasks.
  A stage that reads a row the caller just wrote must not start before that
  write is durable, so dispatch is bound to the session's commit.

Usage:
    tasks.after_commit(db, parse_cv, cv.id)   # queued, fires on db.commit()
    db.commit()

    tasks.spawn(execute_campaign, campaign_id)  # fire now (scheduler tick)

Loop contract:
  Service functions are synchronous and may be called from a thread with no
  running loop (a sync request handler, a script). main.run() binds the worker
  loop with bind_loop(); spawn() called off-loop hands the task to that loop
  thread-safely. With neither a running nor a bound loop, spawn() raises
  RuntimeError.

Rolled-back sessions drop their queued tasks. tasks.drain() waits until
nothing is running (shutdown and tests).

Called by: cv_service, matching_service, campaign_service, scheduler, main
Depends on: sqlalchemy session events, asyncio
"""

import asyncio

from loguru import logger
from sqlalchemy import event
from sqlalchemy.orm import Session

_PENDING_KEY = "pending_tasks"

# Strong references so the loop doesn't garbage-collect running tasks
_background: set[asyncio.Task] = set()

_worker_loop: asyncio.AbstractEventLoop | None = None


def bind_loop(loop: asyncio.AbstractEventLoop) -> None:
    """Register the loop that runs tasks spawned from off-loop callers."""
    global _worker_loop
    _worker_loop = loop


def unbind_loop() -> None:
    global _worker_loop
    _worker_loop = None


def _start(func, args) -> asyncio.Task:
    task = asyncio.get_running_loop().create_task(func(*args), name=func.__name__)
    _background.add(task)
    task.add_done_callback(_on_done)
    return task


def spawn(func, *args) -> asyncio.Task | None:
    """Start ``func(*args)`` as a task.

    On the loop thread the task is created and returned. From any other
    thread it is scheduled on the bound worker loop and None is returned.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        loop = _worker_loop
        if loop is None or loop.is_closed():
            raise RuntimeError(
                f"No event loop to run {func.__name__}; call tasks.bind_loop() first"
            ) from None
        loop.call_soon_threadsafe(_start, func, args)
        logger.debug("Task {} handed to the worker loop", func.__name__)
        return None
    return _start(func, args)


def _on_done(task: asyncio.Task) -> None:
    _background.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.opt(exception=exc).error("Background task {} failed", task.get_name())


def after_commit(db: Session, func, *args) -> None:
    """Queue ``func(*args)`` to start once ``db`` commits.

    With no transaction in progress the task starts immediately.
    """
    if not db.in_transaction():
        spawn(func, *args)
        return
    db.info.setdefault(_PENDING_KEY, []).append((func, args))


@event.listens_for(Session, "after_commit")
def _dispatch_pending(session):
    pending = session.info.pop(_PENDING_KEY, [])
    for func, args in pending:
        spawn(func, *args)


@event.listens_for(Session, "after_rollback")
def _discard_pending(session):
    dropped = session.info.pop(_PENDING_KEY, [])
    if dropped:
        logger.debug("Rollback discarded {} queued task(s)", len(dropped))


def running() -> int:
    return len(_background)


async def drain() -> None:
    """Wait for every background task, including ones spawned while waiting."""
    while _background:
        await asyncio.gather(*list(_background), return_exceptions=True)


def cancel_all() -> None:
    """Request cancellation of every running background task."""
    for task in list(_background):
        task.cancel()
