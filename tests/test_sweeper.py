"""Tests for the background eviction sweeper."""

from __future__ import annotations

import logging
import threading
import time
from unittest.mock import patch

import pytest

from totp_replay_guard.config import StaticConfigurationProvider
from totp_replay_guard.sweeper import EvictionSweeper
from totp_replay_guard.tracker import CodeUsageTracker


def test_runs_repeatedly_until_cancelled():
    calls = []
    third_run = threading.Event()

    def task():
        calls.append(1)
        if len(calls) >= 3:
            third_run.set()

    sweeper = EvictionSweeper(task, interval_seconds=0.01)
    sweeper.start()
    try:
        assert third_run.wait(timeout=5)
    finally:
        sweeper.cancel()
        sweeper.join(timeout=5)

    assert not sweeper.is_alive()
    count = len(calls)
    assert count >= 3
    # No further runs once the worker has exited
    assert len(calls) == count


def test_failure_does_not_stop_schedule(caplog):
    calls = []
    recovered = threading.Event()

    def task():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")
        recovered.set()

    sweeper = EvictionSweeper(task, interval_seconds=0.01)
    with caplog.at_level(logging.ERROR, logger="totp_replay_guard.sweeper"):
        sweeper.start()
        try:
            assert recovered.wait(timeout=5)
        finally:
            sweeper.cancel()
            sweeper.join(timeout=5)

    assert len(calls) >= 2
    assert any("sweep failed" in r.getMessage() for r in caplog.records)


def test_run_once_swallows_task_error():
    def task():
        raise ValueError("bad record")

    sweeper = EvictionSweeper(task, interval_seconds=3600)
    sweeper.run_once()
    assert not sweeper.is_alive()


def test_first_run_waits_one_interval():
    ran = threading.Event()
    sweeper = EvictionSweeper(ran.set, interval_seconds=3600)
    sweeper.start()
    try:
        assert not ran.wait(timeout=0.1)
    finally:
        sweeper.cancel()
        sweeper.join(timeout=5)
    assert not sweeper.is_alive()


def test_cancel_before_first_run_means_no_runs():
    ran = threading.Event()
    sweeper = EvictionSweeper(ran.set, interval_seconds=0.5)
    sweeper.start()
    sweeper.cancel()
    sweeper.join(timeout=5)
    assert not ran.is_set()


def test_worker_is_daemon():
    sweeper = EvictionSweeper(lambda: None, interval_seconds=3600)
    sweeper.start()
    try:
        assert sweeper._thread.daemon is True
    finally:
        sweeper.cancel()


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        EvictionSweeper(lambda: None, interval_seconds=0)


def test_tracker_sweeper_evicts_in_background():
    tracker = CodeUsageTracker(StaticConfigurationProvider(30), sweep_interval_seconds=0.01)
    try:
        tracker.use_code("alice", "123456")
        # Backdate the record so the next background pass sees it as stale
        key, invalid_until = tracker._invalid_codes.snapshot()[0]
        tracker._invalid_codes.remove_if_equals(key, invalid_until)
        tracker._invalid_codes.put_if_absent(key, 0)

        deadline = time.monotonic() + 5
        while tracker.size and time.monotonic() < deadline:
            time.sleep(0.01)
        assert tracker.size == 0
    finally:
        tracker.shutdown()


def test_sweep_concurrent_with_use_code_keeps_refreshed_records():
    t0 = 1_700_000_000_000
    keys_per_writer = 500
    writers = 4
    sweep_now = t0 + 120_000

    tracker = CodeUsageTracker(StaticConfigurationProvider(30), sweep_interval_seconds=3600)
    errors: list[BaseException] = []
    rejected: list[str] = []

    def writer(prefix: str) -> None:
        try:
            for i in range(keys_per_writer):
                if not tracker.use_code(f"{prefix}-{i}", "000000"):
                    rejected.append(f"{prefix}-{i}")
        except BaseException as e:  # pragma: no cover - reported below
            errors.append(e)

    try:
        # Every key starts out stale relative to sweep_now
        with patch("totp_replay_guard.tracker._current_millis", return_value=t0):
            for n in range(writers):
                for i in range(keys_per_writer):
                    tracker.use_code(f"w{n}-{i}", "000000")

        with patch("totp_replay_guard.tracker._current_millis", return_value=sweep_now):
            threads = [threading.Thread(target=writer, args=(f"w{n}",)) for n in range(writers)]
            for t in threads:
                t.start()
            for _ in range(200):
                if not any(t.is_alive() for t in threads):
                    break
                tracker.evict_expired(now=sweep_now)
            for t in threads:
                t.join(timeout=10)
            tracker.evict_expired(now=sweep_now)
    finally:
        tracker.shutdown()

    assert errors == []
    assert rejected == []
    records = tracker._invalid_codes.snapshot()
    assert len(records) == writers * keys_per_writer
    assert all(invalid_until > sweep_now for _, invalid_until in records)
