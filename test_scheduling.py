#!/usr/bin/env python3
"""Tests for the one-at-a-time guard, periodic tasks and cancellation."""

import threading
import time

import pytest

from feedadaptor.cancellation import CancellationToken
from feedadaptor.errors import PushInterrupted
from feedadaptor.scheduling import OneAtATime, PeriodicTask


def test_second_concurrent_call_is_a_no_op():
    entered = threading.Event()
    release = threading.Event()
    already = []

    def slow():
        entered.set()
        release.wait(5)

    guard = OneAtATime(slow, already_running=lambda: already.append(True))
    worker = threading.Thread(target=guard)
    worker.start()
    assert entered.wait(5)

    assert guard.running
    assert guard() is False
    assert already == [True]

    release.set()
    worker.join(5)
    assert not guard.running
    assert guard() is True


def test_guard_releases_after_exception():
    def boom():
        raise RuntimeError("x")

    guard = OneAtATime(boom)
    with pytest.raises(RuntimeError):
        guard()
    assert not guard.running


def test_periodic_task_runs_until_stopped():
    ran = threading.Event()
    calls = []

    def tick():
        calls.append(time.monotonic())
        if len(calls) >= 3:
            ran.set()

    task = PeriodicTask("tick", 0.01, tick, run_immediately=True)
    task.start()
    assert ran.wait(5)
    task.stop(5)
    count = len(calls)
    time.sleep(0.05)

    assert len(calls) == count


def test_periodic_task_survives_failures():
    calls = []
    done = threading.Event()

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise ValueError("first run fails")
        done.set()

    task = PeriodicTask("flaky", 0.01, flaky, run_immediately=True)
    task.start()
    assert done.wait(5)
    task.stop(5)


def test_periodic_task_rejects_bad_interval():
    with pytest.raises(ValueError):
        PeriodicTask("bad", 0, lambda: None)


def test_cancelled_token_interrupts_sleep():
    token = CancellationToken()
    threading.Timer(0.05, token.cancel).start()

    started = time.monotonic()
    with pytest.raises(PushInterrupted):
        token.sleep(30)
    assert time.monotonic() - started < 5


def test_uncancelled_sleep_returns_and_reset_clears():
    token = CancellationToken()
    token.sleep(0)
    token.cancel()
    with pytest.raises(PushInterrupted):
        token.raise_if_cancelled()
    token.reset()
    token.raise_if_cancelled()


def test_background_start_claims_guard_before_returning():
    release = threading.Event()
    already = []
    guard = OneAtATime(lambda: release.wait(5), already_running=lambda: already.append(True))

    first = guard.start_in_background("first")
    second = guard.start_in_background("second")
    release.set()
    first.join(5)

    assert second is None
    assert already == [True]
    assert not guard.running


def test_background_failure_releases_guard():
    def boom():
        raise RuntimeError("x")

    guard = OneAtATime(boom)
    guard.start_in_background("boom").join(5)

    assert not guard.running
