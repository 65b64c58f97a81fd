"""Continuous camera scanning.

The camera pushes every decoded string; the controller forwards distinct
ones to the orchestrator, one at a time, and holds each result on screen
for a fixed time before the same code may be scanned again.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Protocol

from .errors import AttemptInProgressError
from .orchestrator import AttemptState, CheckInOrchestrator

logger = logging.getLogger(__name__)


class CameraSource(Protocol):
    async def start(self, on_decode: Callable[[str], None]) -> None:
        ...

    async def stop(self) -> None:
        ...


@dataclass(frozen=True)
class ScanResult:
    raw: str
    success: bool
    message: str


def describe(orchestrator: CheckInOrchestrator) -> tuple[bool, str]:
    """Turn the orchestrator's state after a scan into a message for the operator."""
    state = orchestrator.state
    if state is AttemptState.CONFIRMED:
        confirmation = orchestrator.confirmation
        message = f"Checked in {confirmation.guest_name}"
        if confirmation.table_number is not None:
            message += f" - table {confirmation.table_number}"
        return True, message
    if state is AttemptState.IDLE and orchestrator.routed_event is not None:
        return True, f"Opened check-in for {orchestrator.routed_event.name}"
    if orchestrator.reason:
        return False, orchestrator.reason
    return False, "Check-in could not be completed"


class ContinuousScanController:
    def __init__(
        self,
        orchestrator: CheckInOrchestrator,
        camera_factory: Callable[[], CameraSource],
        *,
        display_seconds: float = 3.0,
        queue_size: int = 1,
        on_result: Callable[[ScanResult | None], None] | None = None,
    ):
        self.orchestrator = orchestrator
        self.camera_factory = camera_factory
        self.display_seconds = display_seconds
        self.on_result = on_result

        self.last_scanned_value: str | None = None
        self.current_result: ScanResult | None = None
        self.attempts = 0

        self._camera: CameraSource | None = None
        self._scanning = False
        self._lock = asyncio.Lock()
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._worker: asyncio.Task | None = None
        self._clear_handle: asyncio.TimerHandle | None = None

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    @property
    def transitioning(self) -> bool:
        return self._lock.locked()

    async def start(self) -> bool:
        """Open the camera. Ignored while scanning or while a start/stop is running."""
        if self._scanning or self._lock.locked():
            return False
        async with self._lock:
            if self._camera is None:
                self._camera = self.camera_factory()
            self._worker = asyncio.create_task(self._consume())
            try:
                await self._camera.start(self.push)
            except Exception:
                self._worker.cancel()
                self._worker = None
                raise
            self._scanning = True
            logger.info("Scanner started")
            return True

    async def stop(self) -> bool:
        """Stop the camera. Ignored when not scanning or while a start/stop is running."""
        if not self._scanning or self._lock.locked():
            return False
        async with self._lock:
            await self._camera.stop()
            self._scanning = False
            await self._stop_worker()
            logger.info("Scanner stopped")
            return True

    async def close(self) -> None:
        """Stop and release the camera."""
        async with self._lock:
            if self._scanning:
                await self._camera.stop()
                self._scanning = False
            await self._stop_worker()
        if self._clear_handle is not None:
            self._clear_handle.cancel()
            self._clear_handle = None
        self._camera = None

    async def _stop_worker(self) -> None:
        if self._worker is None:
            return
        # Let the code in flight finish so the orchestrator is never left SEARCHING
        if not self._worker.done():
            await self._queue.join()
        self._worker.cancel()
        await asyncio.gather(self._worker, return_exceptions=True)
        self._worker = None

    def push(self, raw: str) -> bool:
        """Decode callback for the camera. Returns whether the string was accepted."""
        if raw == self.last_scanned_value:
            logger.debug("Duplicate scan ignored")
            return False
        try:
            self._queue.put_nowait(raw)
        except asyncio.QueueFull:
            logger.debug("Scan dropped, previous code still processing")
            return False
        self.last_scanned_value = raw
        if self._clear_handle is not None:
            self._clear_handle.cancel()
            self._clear_handle = None
        return True

    async def _consume(self) -> None:
        while True:
            raw = await self._queue.get()
            try:
                await self._process(raw)
            finally:
                self._queue.task_done()

    async def _process(self, raw: str) -> None:
        orchestrator = self.orchestrator
        self.attempts += 1
        try:
            if orchestrator.state is not AttemptState.IDLE:
                orchestrator.reset()
            await orchestrator.submit_scan(raw)
            success, message = describe(orchestrator)
        except AttemptInProgressError as e:
            success, message = False, e.message
        except Exception:
            # Keep the worker alive; the next code must still be processed
            logger.exception("Scan could not be processed")
            success, message = False, "Check-in could not be completed"

        self._show(ScanResult(raw=raw, success=success, message=message))
        if raw == self.last_scanned_value:
            self._clear_handle = asyncio.get_running_loop().call_later(
                self.display_seconds, self._clear
            )

    def _show(self, result: ScanResult | None) -> None:
        self.current_result = result
        if self.on_result is not None:
            self.on_result(result)

    def _clear(self) -> None:
        self._clear_handle = None
        self.last_scanned_value = None
        self._show(None)
