"""
Deferred completion scheduling. One cancellable asyncio task per accepted order; the handle is kept
so a dispute or admin action can suppress a stale auto-completion. The due time is also persisted
on the order (completion_due_at) so the worker sweep can finish the job after a restart.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[str], Awaitable[object]]


class CompletionScheduler:
    def __init__(self, callback: CompletionCallback | None = None):
        self._callback = callback
        self._tasks: dict[str, asyncio.Task] = {}

    def bind(self, callback: CompletionCallback) -> None:
        self._callback = callback

    def schedule(self, order_id: str, delay_seconds: float) -> asyncio.Task:
        """Fire callback(order_id) after delay_seconds. Replaces any timer already set for the order."""
        if self._callback is None:
            raise RuntimeError("CompletionScheduler has no callback bound")
        self.cancel(order_id)
        task = asyncio.create_task(self._run(order_id, delay_seconds), name=f"complete-{order_id}")
        self._tasks[order_id] = task
        task.add_done_callback(lambda t, oid=order_id: self._forget(oid, t))
        logger.info("Scheduled completion for order_id=%s in %.1fs", order_id, delay_seconds)
        return task

    def cancel(self, order_id: str) -> bool:
        task = self._tasks.pop(order_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info("Cancelled scheduled completion for order_id=%s", order_id)
        return True

    def is_scheduled(self, order_id: str) -> bool:
        task = self._tasks.get(order_id)
        return task is not None and not task.done()

    def pending(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _forget(self, order_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(order_id) is task:
            del self._tasks[order_id]

    async def _run(self, order_id: str, delay_seconds: float) -> None:
        await asyncio.sleep(delay_seconds)
        # Past this point the task runs to the end; it is no longer ours to cancel
        self._tasks.pop(order_id, None)
        try:
            await self._callback(order_id)
        except Exception as e:
            # No caller is left to notify: log and drop, no retry
            logger.exception("Deferred completion failed for order_id=%s: %s", order_id, e)
