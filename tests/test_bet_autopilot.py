from __future__ import annotations

import asyncio
import logging
import threading
import time

from automation import RecoveryPlan, SettlementStuckError
from bet_autopilot import AutopilotScheduler, start_autopilot


class FakeService:
    def __init__(self, errors=(), plan=RecoveryPlan(delay_s=0, run_immediately=True)):
        self.errors = list(errors)
        self.plan = plan
        self.cycles = 0
        self.health_checked = False
        self.ran = threading.Event()

    def health_check(self):
        self.health_checked = True

    def startup_recovery(self):
        return self.plan

    def run_cycle(self):
        self.cycles += 1
        self.ran.set()
        if self.errors:
            raise self.errors.pop(0)


async def _wait_for(cond, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not cond():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def test_run_once_success_uses_cycle_interval():
    async def scenario():
        sched = AutopilotScheduler(FakeService(), cycle_interval_s=300, retry_interval_s=60)
        assert await sched.run_once() == 300
        assert sched.cycles_ok == 1
        assert sched.last_error is None

    asyncio.run(scenario())


def test_run_once_failure_uses_retry_interval():
    async def scenario():
        sched = AutopilotScheduler(FakeService(errors=[RuntimeError("rpc down")]),
                                   cycle_interval_s=300, retry_interval_s=60)
        assert await sched.run_once() == 60
        assert sched.cycles_failed == 1
        assert "rpc down" in sched.last_error

    asyncio.run(scenario())


def test_stuck_settlement_is_critical(caplog):
    async def scenario():
        sched = AutopilotScheduler(FakeService(errors=[SettlementStuckError([7])]),
                                   cycle_interval_s=300, retry_interval_s=60)
        return await sched.run_once()

    with caplog.at_level(logging.CRITICAL, logger="bet_autopilot"):
        assert asyncio.run(scenario()) == 60
    assert any(r.levelno == logging.CRITICAL and "[7]" in r.getMessage() for r in caplog.records)


def test_loop_survives_failures_and_stops_promptly():
    async def scenario():
        svc = FakeService(errors=[RuntimeError("first"), RuntimeError("second")])
        sched = AutopilotScheduler(svc, cycle_interval_s=3600, retry_interval_s=0.01)
        task = sched.start(0)
        await _wait_for(lambda: sched.cycles_ok == 1)
        assert sched.cycles_failed == 2
        assert sched.running

        started = time.monotonic()
        await sched.stop()
        assert time.monotonic() - started < 1.0
        assert task.done()
        assert not sched.running
        assert svc.cycles == 3

    asyncio.run(scenario())


def test_start_is_idempotent_while_running():
    async def scenario():
        sched = AutopilotScheduler(FakeService(), cycle_interval_s=3600)
        first = sched.start(3600)
        assert sched.start(0) is first
        await sched.stop()

    asyncio.run(scenario())


def test_start_autopilot_follows_recovery_delay():
    async def scenario():
        svc = FakeService(plan=RecoveryPlan(delay_s=3600, run_immediately=False))
        sched = await start_autopilot(svc)
        await asyncio.sleep(0.05)
        assert svc.health_checked
        assert svc.cycles == 0
        assert sched.next_run_at > time.time() + 3500
        await sched.stop()

    asyncio.run(scenario())


def test_run_now_overrides_recovery():
    async def scenario():
        svc = FakeService(plan=RecoveryPlan(delay_s=3600, run_immediately=False))
        sched = await start_autopilot(svc, run_now=True)
        await _wait_for(lambda: svc.cycles == 1)
        await sched.stop()

    asyncio.run(scenario())
