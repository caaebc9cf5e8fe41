from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional, Protocol

from liveclass.core.config import settings

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle: ...


class InactivityMonitor:
    """
    Host-alone watchdog for a live session.

    A single-shot timer runs for `timeout` seconds. When it expires and the
    roster has at most one participant (the host), `on_timeout` is called once
    and the monitor stops; otherwise the timer starts over. `reset()` restarts
    the countdown while the monitor is running. If `on_timeout` raises (or the
    awaitable it returns fails), the error is logged and the timer is armed again.
    """

    def __init__(
        self,
        on_timeout: Callable[[], Any],
        roster_size: Callable[[], int],
        timeout: float = settings.INACTIVITY_TIMEOUT_MINUTES * 60,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.on_timeout = on_timeout
        self.roster_size = roster_size
        self.timeout = timeout
        self._scheduler = scheduler
        self._handle: Optional[TimerHandle] = None
        self._task: Optional[asyncio.Future] = None
        self.fired = False

    @property
    def active(self) -> bool:
        return self._handle is not None

    def _schedule(self) -> None:
        scheduler = self._scheduler or asyncio.get_running_loop()
        self._handle = scheduler.call_later(self.timeout, self._expire)

    def start(self) -> None:
        self.cancel()
        self.fired = False
        self._schedule()

    def reset(self) -> None:
        if not self.active:
            return
        self._handle.cancel()
        self._schedule()

    def cancel(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()
        task, self._task = self._task, None
        # on_timeout 안에서 cancel() 이 불리면 자기 자신은 취소하지 않는다
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _rearm(self) -> None:
        self.fired = False
        self._schedule()

    def _expire(self) -> None:
        self._handle = None
        size = self.roster_size()
        if size > 1:
            logger.debug(f"Inactivity timer expired with {size} participants; restarting")
            self._schedule()
            return

        logger.info(f"No participants besides the host for {self.timeout:.0f}s; ending session")
        self.fired = True
        try:
            result = self.on_timeout()
        except Exception:
            logger.exception("Inactivity timeout callback failed; restarting timer")
            self._rearm()
            return
        if inspect.isawaitable(result):
            self._task = asyncio.ensure_future(result)
            self._task.add_done_callback(self._timeout_done)

    def _timeout_done(self, task: "asyncio.Future[Any]") -> None:
        if task is not self._task:
            # cancel() 또는 start() 로 이미 떼어낸 작업
            return
        self._task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Inactivity timeout callback failed; restarting timer", exc_info=exc)
            self._rearm()
