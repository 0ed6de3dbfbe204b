"""
Backend Readiness Tracker

Answers "can the primary backend be used yet?" for the life of the process.

State machine:  unknown -> pending -> ready | timed_out

On first use one resolver task races two branches:
- the backend's startup signal, confirmed by a probe afterwards
- probe polling every poll_interval until readiness_timeout

First branch to confirm readiness wins; the loser is cancelled. When the
polling branch gives up the state becomes timed_out. Terminal states
never revert.

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from backends import PrimaryBackend
from config import RenderSettings
from models import ReadinessState

logger = logging.getLogger("math_preview.readiness")

ReadinessListener = Callable[[ReadinessState], None]

_ALLOWED_TRANSITIONS = {
    ReadinessState.unknown: (ReadinessState.pending,),
    ReadinessState.pending: (ReadinessState.ready, ReadinessState.timed_out),
}


class BackendReadinessTracker:
    """Tracks readiness of one primary backend."""

    def __init__(self, backend: Optional[PrimaryBackend], settings: Optional[RenderSettings] = None):
        self.backend = backend
        self.settings = settings or RenderSettings()
        self._state = ReadinessState.unknown
        self._task: Optional[asyncio.Task] = None
        self._resolved: Optional[asyncio.Future] = None
        self._listeners: List[ReadinessListener] = []
        # Which branch settled it: "startup", "polling", "timeout", "no-backend"
        self.resolved_by: Optional[str] = None

    @property
    def state(self) -> ReadinessState:
        return self._state

    # =========================================================================
    # STATE
    # =========================================================================

    def _transition(self, new_state: ReadinessState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS.get(self._state, ()):
            raise ValueError(f"Illegal readiness transition {self._state.value} -> {new_state.value}")
        logger.debug(f"Readiness {self._state.value} -> {new_state.value}")
        self._state = new_state

    def _finish(self, new_state: ReadinessState, resolved_by: str) -> None:
        try:
            self._transition(new_state)
        except ValueError as e:
            logger.error(str(e))
            return
        self.resolved_by = resolved_by
        if self._resolved is not None and not self._resolved.done():
            self._resolved.set_result(new_state)

        if new_state == ReadinessState.ready:
            logger.info(f"Primary backend ready (via {resolved_by})")
        else:
            logger.warning(f"Primary backend not ready ({resolved_by}): using fallback")

        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception as e:
                logger.error(f"Readiness listener failed: {e}")

    def add_listener(self, listener: ReadinessListener) -> None:
        """Call listener once with the terminal state (immediately if already resolved)."""
        if self._state.is_terminal:
            listener(self._state)
        else:
            self._listeners.append(listener)

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    def ensure_started(self) -> Optional[asyncio.Task]:
        """
        Start resolution on first use. Needs a running event loop.

        A resolver left behind by a closed loop is restarted on the current
        one; the state stays pending meanwhile.
        """
        if self._state.is_terminal:
            return self._task

        loop = asyncio.get_running_loop()

        if self._state == ReadinessState.unknown:
            self._transition(ReadinessState.pending)
            if self.backend is None:
                self._finish(ReadinessState.timed_out, "no-backend")
                return None
        elif self._task is not None and not self._task.done() and self._task.get_loop() is loop:
            return self._task

        self._resolved = loop.create_future()
        self._task = loop.create_task(self._resolve())
        return self._task

    async def wait_ready(self) -> bool:
        """Wait for resolution; True only for ready."""
        self.ensure_started()
        if not self._state.is_terminal:
            await asyncio.shield(self._resolved)
        return self._state == ReadinessState.ready

    async def _startup_branch(self) -> bool:
        signal = self.backend.startup()
        if signal is None:
            return False
        try:
            # Shielded: losing the race must not abort the backend's own loading
            await asyncio.shield(signal)
        except Exception as e:
            logger.warning(f"Primary backend startup failed: {type(e).__name__}: {e}")
            return False
        return self._probe()

    async def _polling_branch(self) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.readiness_timeout
        while True:
            if self._probe():
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(self.settings.poll_interval, remaining))

    async def _resolve(self) -> None:
        startup = asyncio.ensure_future(self._startup_branch())
        polling = asyncio.ensure_future(self._polling_branch())
        branches: Dict[asyncio.Future, str] = {startup: "startup", polling: "polling"}
        pending = set(branches)
        winner = None

        try:
            # Polling is the timekeeper: once it gives up, nobody wins
            while winner is None and not polling.done():
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if _succeeded(task):
                        winner = branches[task]
                        break
        finally:
            for task in pending:
                task.cancel()

        if winner:
            self._finish(ReadinessState.ready, winner)
        else:
            self._finish(ReadinessState.timed_out, "timeout")

    def _probe(self) -> bool:
        try:
            return bool(self.backend.probe())
        except Exception as e:
            logger.debug(f"Probe raised {type(e).__name__}: {e}")
            return False

    # =========================================================================
    # SYNCHRONOUS CHECK
    # =========================================================================

    def is_ready_sync(self) -> bool:
        """
        Can the primary render right now? Never changes state.

        Checks the entry point, rebuilds it from lower-level primitives when
        only those are loaded, then confirms with one trivial render.
        """
        if self._state == ReadinessState.ready:
            return True
        if self.backend is None:
            return False
        try:
            if not self.backend.probe() and not self.backend.assemble_entry_point():
                return False
            return self.backend.check_functional()
        except Exception as e:
            logger.debug(f"Synchronous readiness check failed: {type(e).__name__}: {e}")
            return False


def _succeeded(task: asyncio.Future) -> bool:
    if task.cancelled():
        return False
    if task.exception() is not None:
        logger.debug(f"Readiness branch raised {task.exception()!r}")
        return False
    return bool(task.result())
