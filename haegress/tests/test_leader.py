from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from haegress.src.config import LeaderElectionConfig
from haegress.src.leader import LeaseLeaderElector
from haegress.src.metrics import METRICS

NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


def make_elector(
    coordination_api: Any = None,
    identity: str = "pod-1",
    lease_duration_seconds: int = 15,
    renew_deadline_seconds: int = 10,
    retry_period_seconds: int = 0,
) -> LeaseLeaderElector:
    return LeaseLeaderElector(
        coordination_api=coordination_api or MagicMock(),
        namespace="egress-system",
        lease_name="haegress-controller-leader",
        identity=identity,
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
        now_fn=lambda: NOW,
    )


def lease(holder: str | None, renewed_ago: float, acquired_ago: float = 60) -> V1Lease:
    return V1Lease(
        metadata=V1ObjectMeta(name="haegress-controller-leader", namespace="egress-system"),
        spec=V1LeaseSpec(
            holder_identity=holder,
            lease_duration_seconds=15,
            renew_time=NOW - timedelta(seconds=renewed_ago),
            acquire_time=NOW - timedelta(seconds=acquired_ago),
            lease_transitions=2,
        ),
    )


def test_creates_missing_lease() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")

    assert make_elector(api).try_acquire_or_renew() is True

    body = api.create_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.holder_identity == "pod-1"
    assert body.spec.lease_duration_seconds == 15
    assert body.spec.renew_time == NOW


def test_lost_create_race_is_not_an_error() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")
    api.create_namespaced_lease.side_effect = ApiException(status=409, reason="Conflict")

    assert make_elector(api).try_acquire_or_renew() is False


def test_renewal_keeps_acquire_time_and_transitions() -> None:
    api = MagicMock()
    current = lease("pod-1", renewed_ago=5)
    acquired = current.spec.acquire_time
    api.read_namespaced_lease.return_value = current

    assert make_elector(api).try_acquire_or_renew() is True

    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.renew_time == NOW
    assert body.spec.acquire_time == acquired
    assert body.spec.lease_transitions == 2


def test_active_foreign_holder_is_respected() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = lease("pod-2", renewed_ago=3)

    assert make_elector(api).try_acquire_or_renew() is False
    api.replace_namespaced_lease.assert_not_called()


def test_expired_foreign_lease_is_taken_over() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = lease("pod-2", renewed_ago=30)

    assert make_elector(api).try_acquire_or_renew() is True

    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.holder_identity == "pod-1"
    assert body.spec.acquire_time == NOW
    assert body.spec.lease_transitions == 3


def test_released_lease_is_claimed_immediately() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = lease(None, renewed_ago=1)

    assert make_elector(api).try_acquire_or_renew() is True


def test_lost_replace_race_returns_false() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = lease("pod-2", renewed_ago=30)
    api.replace_namespaced_lease.side_effect = ApiException(status=409, reason="Conflict")

    assert make_elector(api).try_acquire_or_renew() is False


def test_read_failure_returns_false() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=500, reason="boom")

    assert make_elector(api).try_acquire_or_renew() is False
    api.create_namespaced_lease.assert_not_called()


def test_constructor_rejects_invalid_timings() -> None:
    with pytest.raises(ValueError, match="renew_deadline_seconds"):
        make_elector(lease_duration_seconds=10, renew_deadline_seconds=10)
    with pytest.raises(ValueError, match="retry_period_seconds"):
        make_elector(renew_deadline_seconds=5, retry_period_seconds=5)


def test_from_config_copies_settings() -> None:
    config = LeaderElectionConfig(
        enabled=True,
        namespace="ops",
        lease_name="lease-a",
        identity="pod-9",
        lease_duration_seconds=20,
        renew_deadline_seconds=12,
        retry_period_seconds=3,
    )

    elector = LeaseLeaderElector.from_config(MagicMock(), config)

    assert (elector.namespace, elector.lease_name, elector.identity) == ("ops", "lease-a", "pod-9")
    assert elector.lease_duration_seconds == 20
    assert elector.renew_deadline_seconds == 12
    assert elector.retry_period_seconds == 3


def test_run_leads_then_releases_on_stop() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = [
        ApiException(status=404, reason="Not Found"),
        lease("pod-1", renewed_ago=0),
    ]
    elector = make_elector(api)
    stop = threading.Event()
    calls: list[str] = []

    def on_started() -> None:
        calls.append("started")
        assert elector.elected.is_set()
        stop.set()

    elector.run(
        on_started_leading=on_started,
        on_stopped_leading=lambda: calls.append("stopped"),
        stop_event=stop,
    )

    assert calls == ["started", "stopped"]
    assert not elector.is_leader
    released = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert released.spec.holder_identity is None
    assert METRICS.leader_state._value.get() == 0


def test_unexpected_error_does_not_end_election_loop() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = [
        ConnectionError("network blip"),
        ApiException(status=404, reason="Not Found"),
        ApiException(status=404, reason="Not Found"),
    ]
    elector = make_elector(api)
    stop = threading.Event()
    started = threading.Event()

    def on_started() -> None:
        started.set()
        stop.set()

    elector.run(on_started_leading=on_started, on_stopped_leading=lambda: None, stop_event=stop)

    assert started.is_set()
    assert api.read_namespaced_lease.call_count == 3


def test_leadership_lost_after_renew_deadline() -> None:
    elector = make_elector(renew_deadline_seconds=1)
    stop = threading.Event()
    stopped: list[bool] = []

    def on_stopped() -> None:
        stopped.append(True)
        stop.set()

    with (
        patch.object(elector, "try_acquire_or_renew", side_effect=[True, False]),
        patch.object(elector, "release") as release,
        patch("haegress.src.leader.time.monotonic", side_effect=[0.0, 0.1, 1.5]),
    ):
        elector.run(on_started_leading=lambda: None, on_stopped_leading=on_stopped, stop_event=stop)

    assert stopped == [True]
    release.assert_not_called()


def test_leadership_kept_while_within_renew_deadline() -> None:
    elector = make_elector(renew_deadline_seconds=3)
    stop = threading.Event()
    stopped: list[bool] = []
    cycles = iter([True, False])

    def cycle() -> bool:
        held = next(cycles)
        if not held:
            stop.set()
        return held

    with (
        patch.object(elector, "try_acquire_or_renew", side_effect=cycle),
        patch.object(elector, "release") as release,
        patch("haegress.src.leader.time.monotonic", side_effect=[0.0, 0.1, 0.5]),
    ):
        elector.run(
            on_started_leading=lambda: None,
            on_stopped_leading=lambda: stopped.append(True),
            stop_event=stop,
        )

    assert stopped == [True]
    release.assert_called_once()
