"""Cooperative cancellation and timers for the sync event loop.

Every timer the sync engine needs (periodic drift checks, queue ticks,
debounce windows) is created through a :class:`Scheduler`, so shutting the
orchestrator down can cancel and await all of them in one place.
"""

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

AsyncCallback = Callable[[], Awaitable[None]]


class CancellationToken:
    """Advisory cancellation flag shared by a long-running operation.

    The operation polls :attr:`cancelled` between steps and uses
    :meth:`sleep` for backoff waits so a cancel request ends the wait early.
    Work already in flight is never interrupted.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.debug(f"Cancellation requested: {reason or 'no reason given'}")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def sleep(self, delay: float) -> bool:
        """Wait for ``delay`` seconds unless cancelled first.

        Args:
            delay: Seconds to wait

        Returns:
            True if the token was cancelled before or during the wait
        """
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True


class Ticker:
    """Runs an async callback every ``interval`` seconds until stopped.

    A failing callback is logged and the ticker keeps running; the next tick
    is the retry.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: AsyncCallback,
        run_immediately: bool = False,
    ):
        self.name = name
        self.interval = interval
        self.callback = callback
        self.run_immediately = run_immediately
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"ticker:{self.name}")

    async def _run(self) -> None:
        if not self.run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            try:
                await self.callback()
            except Exception as e:
                logger.error(f"Ticker {self.name} callback failed: {e}")
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        if task is asyncio.current_task():
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task


class Scheduler:
    """Owner of named tickers and one-shot timers."""

    def __init__(self) -> None:
        self._tickers: dict[str, Ticker] = {}
        self._timers: dict[str, "asyncio.Task[None]"] = {}

    def every(
        self,
        name: str,
        interval: float,
        callback: AsyncCallback,
        run_immediately: bool = False,
    ) -> Ticker:
        """Start a periodic callback, replacing a ticker of the same name.

        Args:
            name: Ticker name
            interval: Seconds between runs
            callback: Coroutine function to call
            run_immediately: Run once right away instead of after one interval

        Returns:
            The started ticker
        """
        old = self._tickers.pop(name, None)
        if old is not None and old.running:
            # Old task is cancelled; its cleanup happens in stop()
            old._task.cancel()  # type: ignore[union-attr]
        ticker = Ticker(name, interval, callback, run_immediately=run_immediately)
        self._tickers[name] = ticker
        ticker.start()
        logger.debug(f"Started ticker {name} (every {interval}s)")
        return ticker

    def call_later(self, name: str, delay: float, callback: AsyncCallback) -> None:
        """Run ``callback`` once after ``delay`` seconds.

        Scheduling a timer with the name of a pending one restarts the wait,
        which is what debouncing needs.
        """
        self.cancel(name)

        async def _fire() -> None:
            await asyncio.sleep(delay)
            # Leave the map before running so the callback may reschedule
            self._timers.pop(name, None)
            try:
                await callback()
            except Exception as e:
                logger.error(f"Timer {name} callback failed: {e}")

        self._timers[name] = asyncio.create_task(_fire(), name=f"timer:{name}")

    def cancel(self, name: str) -> bool:
        """Cancel a pending one-shot timer.

        Returns:
            True if a pending timer was cancelled
        """
        task = self._timers.pop(name, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def pending(self, prefix: str = "") -> list[str]:
        """Names of pending timers, optionally filtered by prefix."""
        return [
            name
            for name, task in self._timers.items()
            if name.startswith(prefix) and not task.done()
        ]

    async def stop_ticker(self, name: str) -> bool:
        """Stop and remove one ticker.

        Returns:
            True if the ticker existed
        """
        ticker = self._tickers.pop(name, None)
        if ticker is None:
            return False
        await ticker.stop()
        return True

    def is_running(self, name: str) -> bool:
        ticker = self._tickers.get(name)
        return ticker is not None and ticker.running

    async def stop(self) -> None:
        """Cancel every ticker and timer and wait for them to finish."""
        tickers = list(self._tickers.values())
        timers = list(self._timers.values())
        self._tickers.clear()
        self._timers.clear()
        for ticker in tickers:
            await ticker.stop()
        for task in timers:
            task.cancel()
        current = asyncio.current_task()
        for task in timers:
            if task is current:
                continue
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.debug(f"Scheduler stopped ({len(tickers)} tickers, {len(timers)} timers)")
