"""
Scheduled entitlement refresh.

An explicit asyncio task owned by the caller replaces any process-wide
subscription context: it fetches the entitlement on start, then every
interval, and keeps the latest state on `.state`.
"""
import asyncio
import contextlib
import inspect
import logging
from typing import Any, Callable, Optional

from markethub.core.config import settings
from markethub.models.usage import EntitlementState


logger = logging.getLogger(__name__)


class EntitlementPoller:
    """
    Periodically refresh an EntitlementState.

    `fetch` may be a coroutine function or a blocking callable (run in a
    worker thread). Fetch errors are logged and the previous state is kept.
    """

    def __init__(self, fetch: Callable[[], Any], interval_seconds: Optional[float] = None):
        self._fetch = fetch
        self.interval_seconds = (
            float(interval_seconds) if interval_seconds is not None else float(settings.ENTITLEMENT_POLL_SECONDS)
        )
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.state: Optional[EntitlementState] = None
        self.last_error: Optional[Exception] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _call(self) -> EntitlementState:
        if inspect.iscoroutinefunction(self._fetch):
            return await self._fetch()
        result = await asyncio.to_thread(self._fetch)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def refresh(self) -> Optional[EntitlementState]:
        """Fetch now; returns the latest known state."""
        try:
            state = await self._call()
        except Exception as e:
            self.last_error = e
            logger.warning(
                "[entitlements] refresh failed, keeping previous state",
                extra={"error": str(e), "has_state": self.state is not None},
            )
            return self.state
        self.state = state
        self.last_error = None
        return state

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.refresh()

    async def start(self) -> Optional[EntitlementState]:
        """Fetch immediately, then keep refreshing every interval."""
        if self.running:
            return self.state
        state = await self.refresh()
        self._task = asyncio.create_task(self._run())
        return state

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
