"""
Background expiry of pending proposals.

A single task wakes every ``sweep_interval_seconds`` and dissolves pending
edges whose acceptance window has elapsed. Each sweep finishes before the
next sleep starts, so sweeps never overlap. Expiry goes through the mutation
engine and therefore uses the same per-node locks as explicit requests.
"""

import asyncio
import logging
from typing import Any

from .mutation_engine import MutationEngine

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Periodic driver for MutationEngine.expire_overdue()."""

    def __init__(self, engine: MutationEngine, interval: float = 60.0):
        """
        Args:
            engine: Mutation engine whose pending edges are swept
            interval: Seconds between sweeps
        """
        self._engine = engine
        self._interval = interval
        self._running = False
        self._task: asyncio.Task | None = None
        self._stats = {"sweeps": 0, "expired": 0, "errors": 0}

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._running:
            logger.warning("Expiry sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Expiry sweeper started (interval={self._interval}s)")

    async def stop(self) -> None:
        """Stop the loop; an in-flight sweep is cancelled before its next commit."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Expiry sweeper stopped")

    async def sweep_once(self) -> int:
        """Run one sweep now. Returns the number of proposals expired."""
        expired = await self._engine.expire_overdue()
        self._stats["sweeps"] += 1
        self._stats["expired"] += expired
        return expired

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Overdue edges stay pending and are retried next sweep
                self._stats["errors"] += 1
                logger.error(f"Expiry sweep failed: {e}")
            await asyncio.sleep(self._interval)

    @property
    def running(self) -> bool:
        return self._running

    def get_stats(self) -> dict[str, Any]:
        """Get sweeper statistics."""
        return {"running": self._running, "interval": self._interval, **self._stats}
