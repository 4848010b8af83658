from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Optional

from .session_manager import SessionManager

log = logging.getLogger("esygrab.activity")

# mousedown/mousemove = pointer-down/pointer-move
INTERACTION_EVENTS = frozenset({"mousedown", "mousemove", "keypress", "scroll", "touchstart", "click"})

Push = Callable[[], Awaitable[None]]


class ActivityTracker:
    """
    Keeps lastActivity fresh while a signed-in device is being used.

    - every interaction touches the local session immediately
    - interactions trigger at most one remote push per debounce window
    - a heartbeat touches + pushes every `heartbeat_seconds` regardless
    """

    def __init__(
        self,
        manager: SessionManager,
        push: Push,
        *,
        debounce_seconds: float = 60.0,
        heartbeat_seconds: float = 300.0,
    ) -> None:
        self.manager = manager
        self.push = push
        self.debounce_seconds = debounce_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self.push_count = 0

        self._stop_event = asyncio.Event()
        self._heartbeat: Optional[asyncio.Task] = None
        self._pending: Optional[asyncio.Task] = None
        self._started = False
        self._generation = 0

    @property
    def running(self) -> bool:
        return self._started

    @property
    def push_pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._generation += 1
        generation = self._generation
        self._stop_event.clear()
        await self._push()
        if generation != self._generation:
            # stopped (or restarted) while the first push was in flight
            return
        self._heartbeat = asyncio.create_task(self._heartbeat_loop())
        log.info("activity tracking started heartbeat=%ss debounce=%ss", self.heartbeat_seconds, self.debounce_seconds)

    async def stop(self) -> None:
        self._generation += 1
        self._started = False
        self._stop_event.set()
        tasks = [t for t in (self._heartbeat, self._pending) if t is not None and not t.done()]
        for t in tasks:
            t.cancel()
        for t in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await t
        if self._heartbeat is not None:
            log.info("activity tracking stopped pushes=%d", self.push_count)
        self._heartbeat = None
        self._pending = None

    def record_interaction(self, event_type: str) -> bool:
        if event_type not in INTERACTION_EVENTS or not self.running:
            return False
        self.manager.touch_activity()
        if not self.push_pending:
            self._pending = asyncio.create_task(self._deferred_push())
        return True

    async def _push(self) -> None:
        try:
            await self.push()
            self.push_count += 1
        except Exception as e:
            log.error("activity push failed err=%s", e)

    async def _deferred_push(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.debounce_seconds)
            return
        except asyncio.TimeoutError:
            pass
        await self._push()

    async def _heartbeat_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.heartbeat_seconds)
            except asyncio.TimeoutError:
                self.manager.touch_activity()
                await self._push()
