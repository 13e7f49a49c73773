"""
Recurring status polls, one asyncio task per document id.

The scheduler is the single owner of every poll task. Starting a poll
for an id that is already polling replaces the old task; a poll
callback that raises stops its own polling; stop_all() drains
everything on teardown.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 3.0  # seconds

# Called with the document id; returns True to keep polling
PollFn = Callable[[str], Awaitable[bool]]
ErrorHook = Callable[[str, Exception], None]


class PollingScheduler:
    """Owns at most one live poll task per document id."""

    def __init__(
        self,
        interval: float = DEFAULT_POLL_INTERVAL,
        *,
        on_error: Optional[ErrorHook] = None,
    ):
        self._interval = interval
        self._on_error = on_error
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def active_ids(self) -> list[str]:
        return list(self._tasks)

    def is_polling(self, document_id: str) -> bool:
        return document_id in self._tasks

    def owns(self, document_id: str, task: Optional[asyncio.Task]) -> bool:
        """True if `task` is still the registered poll for this id."""
        return task is not None and self._tasks.get(document_id) is task

    def start(self, document_id: str, poll_fn: PollFn) -> None:
        """Poll `document_id` every interval; replaces any existing poll.

        Must be called from inside a running event loop.
        """
        self.stop(document_id)
        task = asyncio.get_running_loop().create_task(
            self._run(document_id, poll_fn),
            name=f"poll:{document_id}",
        )
        self._tasks[document_id] = task
        logger.debug("Polling started for %s", document_id)

    def stop(self, document_id: str) -> None:
        """Cancel polling for an id. Safe to call when not polling."""
        task = self._tasks.pop(document_id, None)
        if task is None:
            return
        # A poll callback stopping itself just deregisters; its loop exits
        if task is not asyncio.current_task():
            task.cancel()
        logger.debug("Polling stopped for %s", document_id)

    def stop_all(self) -> None:
        """Cancel every live poll (application teardown)."""
        for document_id in list(self._tasks):
            self.stop(document_id)

    async def aclose(self) -> None:
        """stop_all(), then wait for the cancelled tasks to finish."""
        tasks = list(self._tasks.values())
        self.stop_all()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def wait(self, document_id: str) -> None:
        """Wait until `document_id` is no longer polling.

        Cancelling the waiter (e.g. a timeout) leaves the poll running.
        """
        while True:
            task = self._tasks.get(document_id)
            if task is None:
                return
            await asyncio.wait({task})

    async def _run(self, document_id: str, poll_fn: PollFn) -> None:
        me = asyncio.current_task()
        try:
            while True:
                await asyncio.sleep(self._interval)
                if not self.owns(document_id, me):
                    return
                keep_going = await poll_fn(document_id)
                if not keep_going or not self.owns(document_id, me):
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Polling %s failed, giving up: %s", document_id, e)
            if self._on_error is not None:
                try:
                    self._on_error(document_id, e)
                except Exception:
                    logger.exception("Poll error hook failed for %s", document_id)
        finally:
            if self.owns(document_id, me):
                del self._tasks[document_id]
