"""Tests for the connectivity monitor."""

import pytest

from kiosk_sync.services.offline_mode import ConnectivityMonitor, NetworkMode


def test_starts_unknown_and_counts_as_not_online() -> None:
    monitor = ConnectivityMonitor()
    assert monitor.get_current_mode() == NetworkMode.UNKNOWN
    assert not monitor.is_online()
    assert not monitor.is_offline()


def test_single_failure_does_not_drop_online() -> None:
    monitor = ConnectivityMonitor(max_failures_before_offline=3)
    monitor.on_probe_success()

    monitor.on_probe_failure("timeout")
    monitor.on_probe_failure("timeout")
    assert monitor.is_online()

    monitor.on_probe_failure("timeout")
    assert monitor.is_offline()


def test_first_failure_from_unknown_goes_offline() -> None:
    monitor = ConnectivityMonitor()
    monitor.on_probe_failure("refused")
    assert monitor.is_offline()


def test_reconnect_fires_only_on_offline_to_online() -> None:
    monitor = ConnectivityMonitor()
    fired = []
    monitor.on_reconnect(lambda: fired.append(True))

    monitor.set_online(True)  # unknown -> online
    assert fired == []

    monitor.set_online(False)
    monitor.set_online(True)
    monitor.set_online(True)
    assert fired == [True]


def test_mode_change_callbacks_receive_transition() -> None:
    monitor = ConnectivityMonitor()
    changes = []
    monitor.on_mode_change(lambda old, new, reason: changes.append((old, new)))

    monitor.set_online(False)

    assert changes == [(NetworkMode.UNKNOWN, NetworkMode.OFFLINE)]


def test_failing_callback_does_not_block_others() -> None:
    monitor = ConnectivityMonitor()
    seen = []

    def broken(old, new, reason):
        raise RuntimeError("boom")

    monitor.on_mode_change(broken)
    monitor.on_mode_change(lambda old, new, reason: seen.append(new))

    monitor.set_online(True)

    assert seen == [NetworkMode.ONLINE]


@pytest.mark.asyncio
async def test_check_runs_probe() -> None:
    results = [True, False]
    monitor = ConnectivityMonitor(max_failures_before_offline=1, probe=lambda: results.pop(0))

    assert await monitor.check() is True
    assert monitor.is_online()
    assert await monitor.check() is False
    assert monitor.is_offline()


@pytest.mark.asyncio
async def test_check_treats_probe_exception_as_failure() -> None:
    def probe():
        raise ConnectionError("dns")

    monitor = ConnectivityMonitor(probe=probe)
    assert await monitor.check() is False
    assert monitor.get_status()["consecutive_failures"] == 1
