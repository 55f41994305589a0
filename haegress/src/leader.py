from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from haegress.src.config import LeaderElectionConfig
from haegress.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class LeaseLeaderElector:
    """Singleton gate built on a ``coordination.k8s.io/v1`` Lease.

    Only the replica holding the Lease runs the watch loops and the background
    checker; :attr:`elected` is set while this replica holds it.

    Each cycle reads the Lease and either creates it, renews it (we are the
    holder), takes it over (the holder did not renew within
    ``leaseDurationSeconds``) or backs off.  ``409 Conflict`` on create or
    replace means another replica won the race and is retried next cycle.
    Leadership is only given up after ``renew_deadline_seconds`` without a
    successful renewal.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self.now_fn = now_fn or (lambda: datetime.now(UTC))
        self.elected = threading.Event()

    @classmethod
    def from_config(
        cls, coordination_api: CoordinationV1Api, config: LeaderElectionConfig
    ) -> LeaseLeaderElector:
        return cls(
            coordination_api=coordination_api,
            namespace=config.namespace,
            lease_name=config.lease_name,
            identity=config.identity,
            lease_duration_seconds=config.lease_duration_seconds,
            renew_deadline_seconds=config.renew_deadline_seconds,
            retry_period_seconds=config.retry_period_seconds,
        )

    @property
    def is_leader(self) -> bool:
        return self.elected.is_set()

    def _expired(self, spec: V1LeaseSpec, now: datetime) -> bool:
        if spec.renew_time is None:
            return True
        renewed = spec.renew_time if spec.renew_time.tzinfo else spec.renew_time.replace(tzinfo=UTC)
        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        return (now - renewed).total_seconds() >= duration

    def try_acquire_or_renew(self) -> bool:
        """Run a single election cycle; True when this replica holds the Lease afterwards."""
        now = self.now_fn()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._create(now)
            LOGGER.warning(
                "Failed to read lease %s/%s: %s", self.namespace, self.lease_name, exc.reason
            )
            return False

        spec = lease.spec or V1LeaseSpec()
        if spec.holder_identity not in (None, "", self.identity) and not self._expired(spec, now):
            return False
        return self._claim(lease, spec, now)

    def _create(self, now: datetime) -> bool:
        body = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
                lease_transitions=0,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=body)
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning("Failed to create lease %s: %s", self.lease_name, exc.reason)
            return False
        LOGGER.info("Created leader lease %s/%s", self.namespace, self.lease_name)
        return True

    def _claim(self, lease: V1Lease, spec: V1LeaseSpec, now: datetime) -> bool:
        if spec.holder_identity != self.identity:
            spec.acquire_time = now
            spec.lease_transitions = (spec.lease_transitions or 0) + 1
        elif spec.acquire_time is None:
            spec.acquire_time = now
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.lease_duration_seconds
        lease.spec = spec
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning("Failed to update lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def release(self) -> None:
        """Clear the holder so another replica can take over without waiting."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec is not None and lease.spec.holder_identity == self.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=lease
                )
                LOGGER.info("Released leader lease %s", self.lease_name)
        except ApiException as exc:
            LOGGER.warning("Failed to release leader lease %s: %s", self.lease_name, exc.reason)

    def _became_leader(self, on_started_leading: Callable[[], None]) -> None:
        LOGGER.info("Became leader (identity=%s)", self.identity)
        self.elected.set()
        METRICS.leader_state.set(1)
        METRICS.leader_transitions_total.labels(transition="acquired").inc()
        on_started_leading()

    def _lost_leadership(self, on_stopped_leading: Callable[[], None]) -> None:
        self.elected.clear()
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()
        on_stopped_leading()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Keep electing until *stop_event* is set, releasing the Lease on exit."""
        LOGGER.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.namespace,
            self.lease_name,
            self.identity,
        )
        METRICS.leader_state.set(0)
        last_renewal = time.monotonic()

        while not stop_event.is_set():
            try:
                held = self.try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                held = False

            if held:
                last_renewal = time.monotonic()
                if not self.is_leader:
                    self._became_leader(on_started_leading)
            elif self.is_leader:
                since_renewal = time.monotonic() - last_renewal
                if since_renewal >= self.renew_deadline_seconds:
                    LOGGER.warning("Lost leader lease after %.2fs without renewal", since_renewal)
                    self._lost_leadership(on_stopped_leading)
                else:
                    LOGGER.warning(
                        "Lease renewal failed; keeping leadership for up to %ss",
                        self.renew_deadline_seconds,
                    )
            stop_event.wait(timeout=self.retry_period_seconds)

        if self.is_leader:
            self.release()
            self._lost_leadership(on_stopped_leading)
