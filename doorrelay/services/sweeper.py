"""Liveness Sweeper - evicts devices that went silent without disconnecting"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional

from doorrelay.services.registry import DeviceSession, SessionRegistry

logger = logging.getLogger(__name__)


class LivenessSweeper:
    """
    Runs remove_stale on a fixed period, independent of request traffic

    Covers power loss and network partitions the Socket.IO keep-alive
    did not report as a disconnect.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        interval_seconds: float = 60.0,
        threshold_seconds: float = 300.0,
        on_removed: Optional[Callable[[], Awaitable[None]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.interval_seconds = interval_seconds
        self.threshold_seconds = threshold_seconds
        self.on_removed = on_removed
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self, now: Optional[float] = None) -> List[DeviceSession]:
        """One sweep tick"""
        now = self.clock() if now is None else now
        removed = self.registry.remove_stale(now, self.threshold_seconds)

        for session in removed:
            logger.info(
                f"Removing stale ESP32 device: {session.device_id} "
                f"(silent for {now - session.last_seen_at:.0f}s)"
            )

        if removed:
            logger.info(f"Remaining ESP32 devices: {len(self.registry)}")
            if self.on_removed:
                await self.on_removed()
        return removed

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(
            f"Liveness sweeper started (every {self.interval_seconds}s, "
            f"stale after {self.threshold_seconds}s)"
        )

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Liveness sweeper stopped")

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Liveness sweep failed")
