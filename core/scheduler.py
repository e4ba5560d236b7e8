"""
Scheduler — runs the dispatch coordinator on a fixed interval.

Runs as a background asyncio task. States:

    stopped ──start()──▶ running ──pause()──▶ paused
       ▲                    │  ◀──resume()──    │
       └──────stop()────────┴───────────────────┘

Ticks never overlap: a tick that comes due while the previous one is still
running is skipped and counted, not queued. stop() waits for an in-flight
tick to settle instead of cancelling it half way through Send/Settle.
"""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from core.coordinator import DispatchCoordinator, TickReport

logger = structlog.get_logger()


class Scheduler:

    def __init__(self, coordinator: DispatchCoordinator, interval_s: float = 60.0):
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.coordinator = coordinator
        self.interval_s = interval_s
        self._running = False
        self._paused = False
        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self.last_tick_at: Optional[datetime] = None
        self.last_report: Optional[TickReport] = None
        self.last_error: str = ""
        self.ticks_run = 0
        self.ticks_skipped = 0

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Start the tick loop. Calling start() on a running scheduler is a no-op."""
        if self._running:
            return
        self._running = True
        self._paused = False
        self._wake.clear()
        self._task = asyncio.create_task(self._loop(), name="notifier_scheduler")
        logger.info("scheduler_started", interval_s=self.interval_s)

    async def stop(self) -> None:
        """Stop the loop. An in-flight tick is allowed to finish."""
        if not self._running:
            return
        self._running = False
        self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("scheduler_stopped", ticks_run=self.ticks_run)

    def pause(self) -> None:
        """Keep the loop alive but skip ticks until resume()."""
        if self._running and not self._paused:
            self._paused = True
            logger.info("scheduler_paused")

    def resume(self) -> None:
        if self._running and self._paused:
            self._paused = False
            self._wake.set()
            logger.info("scheduler_resumed")

    @property
    def state(self) -> str:
        if not self._running:
            return "stopped"
        return "paused" if self._paused else "running"

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "running": self._running,
            "paused": self._paused,
            "tick_in_progress": self._tick_lock.locked(),
            "interval_s": self.interval_s,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_tick_outcome": (
                self.last_report.outcome.value if self.last_report
                else ("error" if self.last_error else None)
            ),
            "last_error": self.last_error,
            "ticks_run": self.ticks_run,
            "ticks_skipped": self.ticks_skipped,
        }

    # ── Ticks ─────────────────────────────────────────────────

    async def trigger_now(self) -> Optional[TickReport]:
        """Run one tick immediately. Returns None if a tick is already in progress."""
        return await self._run_one()

    async def _run_one(self) -> Optional[TickReport]:
        if self._tick_lock.locked():
            self.ticks_skipped += 1
            logger.warning("tick_skipped_overlap")
            return None
        async with self._tick_lock:
            self.last_tick_at = datetime.now(timezone.utc)
            try:
                report = await self.coordinator.run_tick()
            except Exception as e:
                logger.error("tick_error", error=str(e), exc_info=True)
                self.last_report = None
                self.last_error = str(e)
                return None
            finally:
                self.ticks_run += 1
            self.last_report = report
            self.last_error = report.error
            return report

    async def _loop(self) -> None:
        """Main loop — runs until stopped."""
        while self._running:
            started = time.monotonic()
            if not self._paused:
                await self._run_one()
            elapsed = time.monotonic() - started
            await self._sleep(max(0.0, self.interval_s - elapsed))

    async def _sleep(self, seconds: float) -> None:
        """Sleep until the next tick is due, or wake early on stop()/resume()."""
        self._wake.clear()
        if not self._running:
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
