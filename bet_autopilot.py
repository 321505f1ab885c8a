"""Runs automation cycles on a schedule.

One asyncio task per scheduler. Cycles run one at a time in a worker thread;
the next one is scheduled from the completion of the previous one
(``cycle_interval`` after success, ``retry_interval`` after a failure). A
failing cycle never ends the loop; only ``stop()`` does.

    python bet_autopilot.py [--run-now]
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import time
from typing import Any, Dict, Optional

from automation import AutomationService, SettlementStuckError
from chain_data import ChainDataReader
from db_core import init_schema
from ledger_gateway import build_gateway
from notifications import NotificationStore
from settings import (
    CYCLE_INTERVAL_SECONDS,
    LEDGER_BACKEND,
    NETWORK,
    RETRY_INTERVAL_SECONDS,
    configure_logging,
)

logger = logging.getLogger(__name__)


class AutopilotScheduler:
    def __init__(
        self,
        service: AutomationService,
        cycle_interval_s: float = CYCLE_INTERVAL_SECONDS,
        retry_interval_s: float = RETRY_INTERVAL_SECONDS,
    ):
        self.service = service
        self.cycle_interval_s = cycle_interval_s
        self.retry_interval_s = retry_interval_s
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.cycles_ok = 0
        self.cycles_failed = 0
        self.last_error: Optional[str] = None
        self.next_run_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, initial_delay: float = 0) -> asyncio.Task:
        if self.running:
            logger.info("autopilot already running; skipping")
            return self._task
        self._stop.clear()
        self._task = asyncio.create_task(self.run_forever(initial_delay), name="bet-autopilot")
        return self._task

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            logger.info("cancelled scheduled automation cycle")
        self._task = None

    async def _sleep_or_stop(self, delay: float) -> bool:
        """Wait ``delay`` seconds. True if a stop was requested meanwhile."""
        self.next_run_at = time.time() + delay
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=max(0.0, delay))
        except asyncio.TimeoutError:
            return self._stop.is_set()
        return True

    async def run_once(self) -> float:
        """Run a single cycle. Returns the delay until the next one."""
        logger.info("running automation cycle...")
        try:
            await asyncio.to_thread(self.service.run_cycle)
        except SettlementStuckError as e:
            self.cycles_failed += 1
            self.last_error = str(e)
            logger.critical("%s", e)
            logger.info("retrying in %ss", self.retry_interval_s)
            return self.retry_interval_s
        except Exception as e:
            self.cycles_failed += 1
            self.last_error = f"{type(e).__name__}: {e}"
            logger.exception("automation cycle failed")
            logger.info("retrying in %ss", self.retry_interval_s)
            return self.retry_interval_s
        self.cycles_ok += 1
        self.last_error = None
        logger.info("next cycle in %ss", self.cycle_interval_s)
        return self.cycle_interval_s

    async def run_forever(self, initial_delay: float = 0) -> None:
        if initial_delay > 0:
            logger.info("first cycle in %ss", initial_delay)
        delay = initial_delay
        while not await self._sleep_or_stop(delay):
            delay = await self.run_once()
        self.next_run_at = None
        logger.info("autopilot stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "cycles_ok": self.cycles_ok,
            "cycles_failed": self.cycles_failed,
            "last_error": self.last_error,
            "next_run_at": self.next_run_at,
        }


def build_service() -> AutomationService:
    return AutomationService(
        gateway=build_gateway(),
        reader=ChainDataReader(),
        notifications=NotificationStore(),
    )


async def start_autopilot(
    service: Optional[AutomationService] = None,
    run_now: bool = False,
) -> AutopilotScheduler:
    """Health check, startup recovery, then start the scheduler task."""
    service = service or build_service()
    await asyncio.to_thread(service.health_check)
    plan = await asyncio.to_thread(service.startup_recovery)

    scheduler = AutopilotScheduler(service)
    if run_now:
        logger.info("running immediate automation cycle due to --run-now flag")
        scheduler.start(0)
    elif plan.run_immediately:
        logger.info("starting immediate cycle based on recovery analysis")
        scheduler.start(0)
    else:
        logger.info("scheduling first cycle based on existing bet timing")
        scheduler.start(plan.delay_s)
    return scheduler


async def _main(run_now: bool) -> None:
    logger.info("starting automation service (network=%s, ledger=%s)", NETWORK, LEDGER_BACKEND)
    init_schema()
    scheduler = await start_autopilot(run_now=run_now)
    logger.info("automation service is running")

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            # Windows event loops
            pass
    try:
        await stop_requested.wait()
    finally:
        logger.info("shutting down automation service...")
        await scheduler.stop()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Automated bet creation and settlement")
    parser.add_argument("--run-now", action="store_true", help="run a cycle immediately, ignoring recovery timing")
    args = parser.parse_args(argv)
    configure_logging()
    try:
        asyncio.run(_main(args.run_now))
    except Exception:
        logger.exception("failed to start automation service")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
