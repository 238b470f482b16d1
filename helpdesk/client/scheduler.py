from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Union

from helpdesk.logging import get_logger

logger = get_logger(__name__)

Delay = Union[float, Callable[[], float]]


class ScheduledTask:
    """Recurring coroutine on the running loop, cancellable by its owner.

    ``delay`` may be a number or a callable evaluated before every sleep,
    so the next firing can follow state such as a token's expiry.
    Exceptions raised by ``action`` are logged and the schedule continues.
    """

    def __init__(
        self,
        name: str,
        action: Callable[[], Awaitable[None]],
        delay: Delay,
    ) -> None:
        self.name = name
        self._action = action
        self._delay = delay
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> "ScheduledTask":
        if self.running:
            return self
        self._cancelled = False
        self._task = asyncio.get_running_loop().create_task(
            self._run_loop(), name=f"scheduled:{self.name}"
        )
        return self

    def cancel(self) -> None:
        self._cancelled = True
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        # Never cancel ourselves from inside the action; the loop exits on the flag
        if task is not asyncio.current_task():
            task.cancel()

    def _next_delay(self) -> float:
        delay = self._delay() if callable(self._delay) else self._delay
        return max(0.0, float(delay))

    async def _run_loop(self) -> None:
        while not self._cancelled:
            try:
                await asyncio.sleep(self._next_delay())
            except asyncio.CancelledError:
                break
            if self._cancelled:
                break
            try:
                await self._action()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error(
                    "scheduled_task_failed",
                    task=self.name,
                    error=str(exc),
                    exc_info=True,
                )
