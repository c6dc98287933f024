"""
Fire-and-forget task tracking.

Side effects that must not hold up a response (session touches, scan
counters, geolocation) are scheduled here. Failures are logged and
swallowed; ``drain()`` waits for everything outstanding, which shutdown
hooks and tests rely on.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Set

from shared.logging import get_logger

log = get_logger(__name__)


class BackgroundTasks:
    def __init__(self) -> None:
        self._pending: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._pending)

    def spawn(self, coro: Awaitable[None], failure_event: str, **context) -> None:
        task = asyncio.create_task(self._guard(coro, failure_event, context))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _guard(coro: Awaitable[None], failure_event: str, context: dict) -> None:
        try:
            await coro
        except Exception as e:
            log.warning(
                failure_event, error=str(e), error_type=type(e).__name__, **context
            )

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
