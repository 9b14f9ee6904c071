"""
Unit tests for the backend availability monitor and its retry cycle.

Probes are fake coroutines; retry intervals are a few milliseconds.
"""
import asyncio

import pytest
import requests

from tributestream.availability import (
    AvailabilityMonitor,
    AvailabilityPhase,
    AvailabilityState,
    describe_probe_error,
)


def _run(coro):
    return asyncio.run(coro)


class ScriptedProbe:
    """Probe that plays back a list of outcomes (status codes or exceptions)."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, url, timeout):
        self.calls += 1
        outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def make_monitor(probe, **overrides):
    options = {
        "probe_url": "http://cms.test/api/tributes",
        "timeout": 1.0,
        "max_retries": 2,
        "retry_interval": 0.01,
        "enabled": True,
    }
    options.update(overrides)
    return AvailabilityMonitor(probe=probe, **options)


# =============================================================================
# Single checks
# =============================================================================

def test_initial_state_is_unknown():
    monitor = make_monitor(ScriptedProbe(200))
    assert monitor.status == AvailabilityState()
    assert monitor.phase is AvailabilityPhase.UNKNOWN


def test_ok_response_means_available():
    monitor = make_monitor(ScriptedProbe(200))

    assert _run(monitor.check_now()) is True
    assert monitor.status.available
    assert monitor.status.error is None
    assert monitor.status.last_checked is not None
    assert monitor.phase is AvailabilityPhase.AVAILABLE


@pytest.mark.parametrize("status_code", [401, 403, 500])
def test_any_non_404_response_means_available(status_code):
    monitor = make_monitor(ScriptedProbe(status_code))
    assert _run(monitor.check_now()) is True


def test_not_found_means_unavailable():
    monitor = make_monitor(ScriptedProbe(404))

    assert _run(monitor.check_now()) is False
    assert monitor.status.error == "Backend responded with status 404"
    assert monitor.phase is AvailabilityPhase.UNAVAILABLE


def test_connection_refused_message():
    monitor = make_monitor(ScriptedProbe(requests.ConnectionError("refused")))

    assert _run(monitor.check_now()) is False
    assert monitor.status.error == "Backend server is not running or unreachable"


def test_probe_is_abandoned_after_timeout():
    async def hanging_probe(url, timeout):
        await asyncio.sleep(5)
        return 200

    monitor = make_monitor(hanging_probe, timeout=0.01)

    assert _run(monitor.check_now()) is False
    assert monitor.status.error == "Connection to backend timed out"


def test_describe_probe_error():
    assert describe_probe_error(requests.Timeout()) == "Connection to backend timed out"
    assert describe_probe_error(ConnectionRefusedError()) == (
        "Backend server is not running or unreachable"
    )
    assert describe_probe_error(ValueError("bad url")) == "Connection error: bad url"


# =============================================================================
# Retry cycle
# =============================================================================

def test_retries_until_given_up():
    probe = ScriptedProbe(404)
    monitor = make_monitor(probe, max_retries=2)

    async def scenario():
        assert await monitor.start() is False
        assert monitor.status.retry_scheduled
        assert monitor.status.retry_count == 1
        await asyncio.sleep(0.2)

    _run(scenario())
    assert probe.calls == 3
    assert monitor.status.retry_count == 2
    assert not monitor.status.retry_scheduled
    assert monitor.phase is AvailabilityPhase.GIVEN_UP


def test_success_after_retry_resets_bookkeeping():
    probe = ScriptedProbe(requests.ConnectionError("refused"), 200)
    monitor = make_monitor(probe)

    async def scenario():
        await monitor.start()
        await asyncio.sleep(0.1)

    _run(scenario())
    assert probe.calls == 2
    assert monitor.status.available
    assert monitor.status.retry_count == 0
    assert not monitor.status.retry_scheduled


def test_zero_retries_gives_up_immediately():
    probe = ScriptedProbe(404)
    monitor = make_monitor(probe, max_retries=0)

    _run(monitor.start())
    assert monitor.phase is AvailabilityPhase.GIVEN_UP
    assert probe.calls == 1


def test_force_check_restarts_retry_cycle():
    probe = ScriptedProbe(404)
    monitor = make_monitor(probe, max_retries=1, retry_interval=0.01)

    async def scenario():
        await monitor.start()
        await asyncio.sleep(0.1)
        assert monitor.phase is AvailabilityPhase.GIVEN_UP

        monitor.retry_interval = 10
        assert await monitor.force_check() is False
        assert monitor.status.retry_count == 1
        assert monitor.status.retry_scheduled
        monitor.stop()

    _run(scenario())
    assert not monitor.status.retry_scheduled


def test_force_check_cancels_retry_already_in_flight():
    calls = []

    async def slow_failing_probe(url, timeout):
        calls.append(url)
        await asyncio.sleep(0.05)
        return 404

    monitor = make_monitor(slow_failing_probe, max_retries=2, retry_interval=0.01)

    async def scenario():
        await monitor.start()
        # The first retry is now in flight
        await asyncio.sleep(0.03)
        monitor.retry_interval = 10
        assert await monitor.force_check() is False
        await asyncio.sleep(0.1)
        state = monitor.status
        monitor.stop()
        return state

    state = _run(scenario())
    assert len(calls) == 3
    assert state.retry_count == 1
    assert state.retry_scheduled


def test_successful_check_cancels_pending_retry():
    probe = ScriptedProbe(404, 200)
    monitor = make_monitor(probe, retry_interval=10)

    async def scenario():
        await monitor.start()
        pending = monitor._retry_task
        assert pending is not None
        assert await monitor.force_check() is True
        await asyncio.sleep(0)
        return pending

    pending = _run(scenario())
    assert pending.cancelled()
    assert monitor.status.retry_count == 0
    assert probe.calls == 2


def test_stop_cancels_retry():
    monitor = make_monitor(ScriptedProbe(404), retry_interval=10)

    async def scenario():
        await monitor.start()
        monitor.stop()
        await asyncio.sleep(0)

    _run(scenario())
    assert not monitor.status.retry_scheduled


def test_disabled_monitor_does_not_probe():
    probe = ScriptedProbe(404)
    monitor = make_monitor(probe, enabled=False)

    assert _run(monitor.start()) is True
    assert probe.calls == 0


# =============================================================================
# Subscriptions
# =============================================================================

def test_subscribers_see_every_change():
    seen = []
    monitor = make_monitor(ScriptedProbe(200, 404))
    unsubscribe = monitor.subscribe(seen.append)

    _run(monitor.check_now())
    unsubscribe()
    _run(monitor.check_now())

    assert seen[0] == AvailabilityState()
    assert seen[-1].available
    assert len(seen) == 2


def test_failing_subscriber_does_not_break_monitor():
    monitor = make_monitor(ScriptedProbe(200))

    def broken(state):
        if state.last_checked is not None:
            raise RuntimeError("listener bug")

    monitor.subscribe(broken)
    assert _run(monitor.check_now()) is True


def test_state_to_dict():
    data = AvailabilityState(retry_count=2, retry_scheduled=True).to_dict()
    assert data == {
        "available": False,
        "lastChecked": None,
        "error": None,
        "retryCount": 2,
        "retryScheduled": True,
    }
