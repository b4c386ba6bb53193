"""
Cooperative cancellation and bounded task fan-out for sync runs.
"""
import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, Optional
import logging

logger = logging.getLogger(__name__)


class CancellationToken:
    """Set once by the caller (e.g. on Ctrl-C); checked between messages and groups."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.info("Cancellation requested")
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


async def run_bounded(
    factories: Iterable[Callable[[], Awaitable[Any]]],
    limit: int,
    token: Optional[CancellationToken] = None,
) -> List[Any]:
    """
    Run coroutine factories as tasks with at most `limit` in flight.

    The first task failure cancels the rest and is re-raised. When the token
    fires, in-flight tasks are cancelled and unfinished slots come back as None.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(factory):
        async with semaphore:
            if token is not None and token.is_cancelled:
                return None
            return await factory()

    tasks = [asyncio.ensure_future(_run(f)) for f in factories]
    if not tasks:
        return []

    cancel_waiter = asyncio.ensure_future(token.wait()) if token is not None else None
    pending = set(tasks)
    try:
        while pending:
            watched = pending | {cancel_waiter} if cancel_waiter else pending
            done, _ = await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
            if cancel_waiter in done:
                logger.info(f"Cancelling {len(pending)} in-flight tasks")
                break
            for task in done:
                pending.discard(task)
                error = task.exception()
                if error is not None:
                    raise error
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    return [
        task.result() if task.done() and not task.cancelled() and task.exception() is None else None
        for task in tasks
    ]
