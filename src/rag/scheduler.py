from __future__ import annotations

"""Cancellable background tasks for periodic sweeps and debounced jobs."""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Callback = Callable[[], Any | Awaitable[Any]]


async def _invoke(callback: Callback) -> Any:
    result = callback()
    if inspect.isawaitable(result):
        return await result
    return result


class RecurringTask:
    """Run a callback every ``interval`` seconds until stopped."""

    def __init__(self, name: str, interval: float, callback: Callback) -> None:
        self.name = name
        self.interval = interval
        self._callback = callback
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the loop on the running event loop."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop_event), name=self.name)
        logger.info("recurring_task_started", extra={"task": self.name, "interval": self.interval})

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await _invoke(self._callback)
            except Exception:
                logger.exception("recurring_task_failed", extra={"task": self.name})

    async def stop(self) -> None:
        """Signal the loop to exit and wait for it."""
        if self._stop_event is not None:
            self._stop_event.set()
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("recurring_task_stopped", extra={"task": self.name})


class DebouncedTask:
    """Run a callback once, ``delay`` seconds after the last trigger."""

    def __init__(self, name: str, delay: float, callback: Callback) -> None:
        self.name = name
        self.delay = delay
        self._callback = callback
        self._task: asyncio.Task[None] | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger(self) -> None:
        """Restart the countdown, dropping any pending run."""
        if self.pending:
            self._task.cancel()
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def _run(self) -> None:
        await asyncio.sleep(self.delay)
        try:
            await _invoke(self._callback)
        except Exception:
            logger.exception("debounced_task_failed", extra={"task": self.name})

    async def wait(self) -> None:
        """Wait for a pending run to finish."""
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def cancel(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
