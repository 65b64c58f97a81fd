"""Unattended kiosk mode: after a check-in, count down and get ready for the next guest."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .orchestrator import AttemptState, CheckInOrchestrator

logger = logging.getLogger(__name__)


class KioskLoop:
    def __init__(
        self,
        orchestrator: CheckInOrchestrator,
        *,
        steps: int = 10,
        interval: float = 1.0,
        on_tick: Callable[[int], None] | None = None,
    ):
        if steps < 1:
            raise ValueError("Kiosk countdown needs at least one step")
        self.orchestrator = orchestrator
        self.steps = steps
        self.interval = interval
        self.on_tick = on_tick
        self.remaining = 0
        self.completed = 0
        self._task: asyncio.Task | None = None
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    def attach(self) -> None:
        """Follow the orchestrator: count down on CONFIRMED, stop when anything else happens."""
        if self._unsubscribe is None:
            self._unsubscribe = self.orchestrator.subscribe(self._on_state)

    def detach(self) -> None:
        self.cancel()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_state(self, state: AttemptState) -> None:
        if state is AttemptState.CONFIRMED:
            self.start()
        else:
            self.cancel()

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> None:
        if self._task is None:
            return
        logger.info("Kiosk countdown cancelled with %d steps left", self.remaining)
        self._task.cancel()
        self._task = None
        self.remaining = 0

    def interrupt(self) -> None:
        """A person touched the kiosk: drop the countdown and start over now."""
        self.cancel()
        self.orchestrator.reset()

    async def _run(self) -> None:
        for remaining in range(self.steps, 0, -1):
            self.remaining = remaining
            if self.on_tick is not None:
                self.on_tick(remaining)
            await asyncio.sleep(self.interval)

        self.remaining = 0
        # Detach from the task before reset() notifies us about IDLE
        self._task = None
        self.completed += 1
        logger.info("Kiosk countdown finished, ready for next guest")
        self.orchestrator.reset()
