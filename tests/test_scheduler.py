"""Tests for the background cleanup scheduler."""

from __future__ import annotations

import threading

from conftest import T0
from core.models import CleanupReport
from core.scheduler import CleanupScheduler


class FakeCleaner:
    """Records calls; a pass can be held open with `release`."""

    def __init__(self, skipped=False, block=False):
        self.skipped = skipped
        self.passes = 0
        self.housekeeping = 0
        self.entered = threading.Event()
        self.release = threading.Event()
        self.finished = threading.Event()
        if not block:
            self.release.set()

    def run_pass(self):
        self.passes += 1
        self.entered.set()
        self.release.wait(5)
        self.finished.set()
        return CleanupReport(started_at=T0, skipped=self.skipped)

    def run_housekeeping(self):
        self.housekeeping += 1
        return {}


class FailingCleaner(FakeCleaner):
    def run_pass(self):
        self.passes += 1
        self.entered.set()
        raise RuntimeError("database is locked")


def test_run_once_runs_housekeeping(clock):
    cleaner = FakeCleaner()
    scheduler = CleanupScheduler(cleaner, clock=clock)

    report = scheduler.run_once()

    assert not report.skipped
    assert cleaner.housekeeping == 1
    assert scheduler.last_run == clock.now
    assert scheduler.last_report is report


def test_skipped_pass_has_no_housekeeping(clock):
    cleaner = FakeCleaner(skipped=True)
    scheduler = CleanupScheduler(cleaner, clock=clock)

    assert scheduler.run_once().skipped
    assert cleaner.housekeeping == 0


def test_housekeeping_can_be_disabled(clock):
    cleaner = FakeCleaner()
    CleanupScheduler(cleaner, run_housekeeping=False, clock=clock).run_once()
    assert cleaner.housekeeping == 0


def test_start_runs_immediately_and_stops(clock):
    cleaner = FakeCleaner()
    scheduler = CleanupScheduler(cleaner, interval_seconds=3600, clock=clock)

    scheduler.start()
    assert cleaner.entered.wait(5)
    assert scheduler.is_running

    scheduler.stop(timeout=5)
    assert not scheduler.is_running
    assert cleaner.passes == 1


def test_start_without_immediate_run(clock):
    cleaner = FakeCleaner()
    scheduler = CleanupScheduler(cleaner, interval_seconds=3600, clock=clock)

    scheduler.start(run_immediately=False)
    scheduler.stop(timeout=5)

    assert cleaner.passes == 0


def test_stop_lets_running_pass_finish(clock):
    cleaner = FakeCleaner(block=True)
    scheduler = CleanupScheduler(cleaner, interval_seconds=3600, clock=clock)

    scheduler.start()
    assert cleaner.entered.wait(5)

    scheduler.stop(timeout=0.1)
    assert scheduler.is_running
    assert not cleaner.finished.is_set()

    cleaner.release.set()
    scheduler.stop(timeout=5)

    assert cleaner.finished.is_set()
    assert cleaner.housekeeping == 1
    assert not scheduler.is_running


def test_failed_pass_does_not_kill_scheduler(clock, log_records):
    cleaner = FailingCleaner()
    scheduler = CleanupScheduler(cleaner, interval_seconds=0.01, clock=clock)

    scheduler.start()
    assert cleaner.entered.wait(5)
    scheduler.stop(timeout=5)

    assert cleaner.passes >= 1
    assert any("Cleanup pass failed" in r["message"] for r in log_records if r["level"].name == "ERROR")
