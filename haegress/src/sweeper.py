from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException

from haegress.src.metrics import METRICS
from haegress.src.resources import display_name


class ActivityMarker:
    """Timestamp of the most recent reconcile activity.

    Plain load/store cell shared by every reconcile thread and the sweeper;
    the last writer wins.  Racing writers at worst cause one extra or one
    skipped sweep.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._value: float | None = None

    def touch(self) -> None:
        self._value = self._clock()

    def store(self, value: float) -> None:
        self._value = value

    def load(self) -> float | None:
        return self._value


@dataclass(frozen=True)
class SweepOutcome:
    skipped: bool
    reconciled: int = 0
    failed: int = 0


class BackgroundSweeper:
    """Periodically re-run the drift reconciler over every policy.

    A tick is skipped when the activity marker shows a reconcile less than
    half an interval ago: watch-driven reconciles already covered the cluster
    and a full list would only add load.  Policies are reconciled one after
    the other; the feedback synchronizer stays watch driven.
    """

    def __init__(
        self,
        interval_seconds: float,
        list_policies: Callable[[], list[dict[str, Any]]],
        reconcile_policy: Callable[[dict[str, Any]], Any],
        marker: ActivityMarker,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval_seconds = interval_seconds
        self.list_policies = list_policies
        self.reconcile_policy = reconcile_policy
        self.marker = marker
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

    @property
    def enabled(self) -> bool:
        return self.interval_seconds > 0

    def tick(self) -> SweepOutcome:
        last_activity = self.marker.load()
        if last_activity is None:
            self.logger.debug("No previous reconcile recorded, initializing timestamp")
            self.marker.store(self.clock())
            METRICS.sweep_ticks_total.labels(outcome="skipped").inc()
            return SweepOutcome(skipped=True)

        elapsed = self.clock() - last_activity
        if elapsed < self.interval_seconds / 2:
            self.logger.info(
                "Last reconcile %.1fs ago is too recent, skipping periodic check", elapsed
            )
            METRICS.sweep_ticks_total.labels(outcome="skipped").inc()
            return SweepOutcome(skipped=True)

        try:
            policies = self.list_policies()
        except ApiException:
            self.logger.exception("Failed to list policies for periodic check")
            METRICS.sweep_ticks_total.labels(outcome="list_failed").inc()
            return SweepOutcome(skipped=False, failed=1)

        reconciled = 0
        failed = 0
        for policy in policies:
            self.logger.info("Periodic check of policy %s", display_name(policy))
            try:
                self.reconcile_policy(policy)
                reconciled += 1
            except Exception:
                failed += 1
                METRICS.sweep_failures_total.inc()
                self.logger.exception(
                    "Periodic check of policy %s failed", display_name(policy)
                )

        METRICS.sweep_ticks_total.labels(outcome="ran").inc()
        return SweepOutcome(skipped=False, reconciled=reconciled, failed=failed)

    def run(
        self,
        stop_event: threading.Event,
        elected: threading.Event | None = None,
    ) -> None:
        """Tick every ``interval_seconds`` until *stop_event* is set.

        Nothing runs before *elected* is set, so only the replica holding the
        leader lease sweeps.  A tick in progress always completes.
        """
        if not self.enabled:
            self.logger.info("Background checker disabled")
            return

        if elected is not None:
            while not elected.wait(timeout=1.0):
                if stop_event.is_set():
                    return

        self.logger.info(
            "Starting background checker (interval=%ss)", self.interval_seconds
        )
        while not stop_event.wait(timeout=self.interval_seconds):
            self.tick()
        self.logger.info("Background checker stopped")
