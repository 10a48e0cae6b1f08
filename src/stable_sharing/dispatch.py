"""Best-effort background side effects.

Preset grant seeding and notifications run after the primary state
transition has been persisted. They are scheduled as asyncio tasks and are
never awaited by the transition itself: their exceptions are logged here
and go no further.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class BackgroundDispatcher:
    """Fire-and-forget task runner with error isolation.

    ``submit`` returns immediately. ``drain`` waits for everything that is
    still in flight (used at shutdown and by tests).
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()
        self.failures: int = 0

    def submit(
        self,
        name: str,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any,
    ) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(
            self._run(name, fn, *args, **kwargs),
            name=f"best-effort:{name}",
        )
        # Keep a strong reference until done; the loop only holds weak ones.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        name: str,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any,
    ) -> None:
        try:
            await fn(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            logger.exception("Best-effort step %s failed; primary transition unaffected", name)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for all in-flight tasks (including ones they schedule)."""
        while self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)
            if timeout is not None:
                return
