from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Hashable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from haegress.src.config import ControllerConfig
from haegress.src.events import EventRecorder
from haegress.src.kube import ClusterClient, WatchTarget, is_not_found, to_manifest
from haegress.src.metrics import METRICS
from haegress.src.reconciler import DriftReconciler, ReconcileOutcome
from haegress.src.resources import (
    controller_uid,
    display_name,
    find_owner,
    gateway_policy_name,
    metadata,
)
from haegress.src.router import (
    ADDED,
    ReconcileRequest,
    SyncRequest,
    route_derived_event,
    route_policy_event,
    route_service_event,
)
from haegress.src.sweeper import ActivityMarker, BackgroundSweeper
from haegress.src.sync import FeedbackSynchronizer, SyncResult
from haegress.src.workqueue import WorkQueue


class EgressGatewayController:
    """Keeps CiliumEgressGatewayPolicies and probe Services in line with policies.

    Three list-then-watch loops (policies, gateway policies, probe Services)
    feed a de-duplicating work queue through the router.  Worker threads pull
    from the queue and run either the drift reconciler (for a
    :class:`ReconcileRequest`) or the feedback synchronizer (for a
    :class:`SyncRequest`).  A failed request is requeued with bounded
    exponential backoff; the same key is never processed by two workers at
    once, different policies reconcile in parallel.

    The background sweeper runs beside the workers once ``elected`` is set.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        recorder: EventRecorder,
        config: ControllerConfig,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cluster = cluster
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.marker = ActivityMarker(clock=clock)
        self.synchronizer = FeedbackSynchronizer(cluster=cluster, recorder=recorder)
        self.reconciler = DriftReconciler(
            cluster=cluster,
            recorder=recorder,
            synchronizer=self.synchronizer,
            egress_namespace=config.egress_namespace,
            load_balancer_class=config.load_balancer_class,
            marker=self.marker,
        )
        self.sweeper = BackgroundSweeper(
            interval_seconds=config.background_checker_seconds,
            list_policies=cluster.list_policies,
            reconcile_policy=self.reconciler.reconcile,
            marker=self.marker,
            clock=clock,
        )
        self._clock = clock
        self.queue = WorkQueue(clock=clock)
        self.ready = threading.Event()

        self._retry_attempts: dict[Hashable, int] = {}
        self._retry_lock = threading.Lock()
        self._synced: dict[str, bool] = {}
        self._external_stop = threading.Event()
        self._active_watchers: dict[str, watch.Watch] = {}
        self._watcher_lock = threading.Lock()

    # Request handling

    def reconcile(self, request: ReconcileRequest) -> ReconcileOutcome | None:
        """Reconcile one policy; None when it no longer exists."""
        try:
            policy = self.cluster.get_policy(request.namespace, request.name)
        except ApiException as exc:
            if is_not_found(exc):
                # Deleted: ownership cascade removes the derived objects.
                self.logger.debug("%s not found, nothing to do", request)
                return None
            self.logger.error("Unable to fetch %s: %s", request, exc.reason)
            raise
        return self.reconciler.reconcile(policy)

    def sync_service(self, request: SyncRequest) -> SyncResult | None:
        """Run the feedback synchronizer for one probe Service.

        Returns None when there is nothing to sync against yet: the Service or
        its gateway policy is gone, the Service has no owning policy, or the
        gateway policy of that name is controlled by someone else.  The next
        policy reconcile creates a missing gateway policy and syncs it.
        """
        try:
            service = self.cluster.get_service(request.namespace, request.name)
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise

        reference = find_owner(service)
        owner_uid = controller_uid(service)
        if reference is None or not owner_uid:
            return None

        name = gateway_policy_name(request.namespace, reference["name"])
        try:
            gateway_policy = self.cluster.get_gateway_policy(name)
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.debug("Gateway policy %s for %s not created yet", name, request)
                return None
            raise
        if controller_uid(gateway_policy) != owner_uid:
            self.logger.warning(
                "Gateway policy %s is not controlled by the policy owning %s, not syncing",
                name,
                request,
            )
            METRICS.sync_total.labels(outcome="foreign").inc()
            return None
        return self.synchronizer.sync(service, gateway_policy)

    def _policies_for_owner_lookup(self) -> list[dict[str, Any]]:
        try:
            return self.cluster.list_policies()
        except ApiException as exc:
            self.logger.error("Unable to list policies to resolve an owner: %s", exc.reason)
            return []

    def _next_retry_delay(self, key: Hashable) -> float:
        with self._retry_lock:
            attempt = self._retry_attempts.get(key, 0) + 1
            self._retry_attempts[key] = attempt
        delay = self.config.requeue_base_seconds * float(2 ** (attempt - 1))
        return min(self.config.requeue_max_seconds, delay)

    def _forget(self, key: Hashable) -> None:
        with self._retry_lock:
            self._retry_attempts.pop(key, None)

    def _requeue(self, key: Hashable) -> None:
        delay = self._next_retry_delay(key)
        kind = "sync" if isinstance(key, SyncRequest) else "reconcile"
        METRICS.requeue_total.labels(kind=kind).inc()
        self.logger.warning("Requeueing %s in %.1fs", key, delay)
        self.queue.add_after(key, delay)

    def process(self, key: Hashable) -> None:
        """Handle one queued request, requeueing it with backoff on failure."""
        started = time.monotonic()
        try:
            if isinstance(key, SyncRequest):
                result = self.sync_service(key)
                requeue = result is not None and result.requeue
            else:
                outcome = self.reconcile(key)
                requeue = outcome is not None and outcome.requeue
        except ApiException as exc:
            self.logger.error(
                "Unable to reconcile %s (status=%s): %s, please check RBAC permissions",
                key,
                exc.status,
                exc.reason,
            )
            METRICS.reconcile_total.labels(result="error").inc()
            self._requeue(key)
            return
        except Exception:
            self.logger.exception("Unexpected error while processing %s", key)
            METRICS.reconcile_total.labels(result="error").inc()
            self._requeue(key)
            return
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)

        if requeue:
            METRICS.reconcile_total.labels(result="requeue").inc()
            self._requeue(key)
            return
        METRICS.reconcile_total.labels(result="success").inc()
        self._forget(key)

    def handle_event(self, kind: str, event_type: str, obj: dict[str, Any]) -> None:
        """Translate one watch event into queued requests."""
        if kind == "policy":
            requests: list[Any] = list(route_policy_event(event_type, obj))
        elif kind == "service":
            requests = list(route_service_event(event_type, obj, self._policies_for_owner_lookup))
        else:
            requests = list(route_derived_event(event_type, obj, self._policies_for_owner_lookup))
        for request in requests:
            self.logger.debug(
                "%s event on %s %s enqueues %s", event_type, kind, display_name(obj), request
            )
            self.queue.add(request)

    # Loops

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt open watch streams."""
        self._external_stop.set()
        self.queue.shutdown()
        with self._watcher_lock:
            watchers = list(self._active_watchers.values())
        for watcher in watchers:
            watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _mark_synced(self, kind: str, targets: int) -> None:
        self._synced[kind] = True
        if sum(self._synced.values()) >= targets:
            self.ready.set()

    def health_status(self) -> dict[str, Any]:
        return {
            "ready": self.ready.is_set(),
            "watches": dict(self._synced),
            "queueDepth": len(self.queue),
        }

    def _list_and_replay(self, target: WatchTarget) -> str | None:
        """List every object of *target*, replay it as ADDED and return the resourceVersion."""
        listing = to_manifest(target.list_fn(**target.kwargs))
        for item in listing.get("items") or []:
            self.handle_event(target.kind, ADDED, to_manifest(item))
        return metadata(listing).get("resourceVersion")

    def watch_forever(self, target: WatchTarget, stop: threading.Event, targets: int = 1) -> None:
        """List-then-watch one kind until *stop* is set.

        ``410 Gone`` re-lists and resumes; ``401``/``403`` end the loop and
        clear readiness because retrying cannot fix RBAC; any other error
        reconnects after an exponential backoff with jitter capped at 30 s.
        """
        kind = target.kind
        resource_version: str | None = None
        listed = False
        backoff_seconds = 1
        stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watchers[kind] = watcher
            try:
                if not listed:
                    resource_version = self._list_and_replay(target)
                    listed = True
                    self._mark_synced(kind, targets)
                    self.logger.info(
                        "Starting %s watch from resourceVersion %s", kind, resource_version
                    )

                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=kind).inc()
                stream_count += 1
                stream = watcher.stream(
                    target.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.config.watch_timeout_seconds,
                    **target.kwargs,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    event_type = str(event.get("type", ""))
                    obj = to_manifest(event.get("object"))
                    if event_type == "ERROR":
                        if obj.get("code") == 410:
                            raise ApiException(status=410, reason=obj.get("message"))
                        self.logger.warning("%s watch returned an error: %s", kind, obj)
                        break
                    version = metadata(obj).get("resourceVersion")
                    if version:
                        resource_version = version
                    if event_type == "BOOKMARK":
                        continue
                    self.handle_event(kind, event_type, obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", kind)
                    listed = False
                    continue
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied for %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        kind,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(kind=kind).inc()
                    self.ready.clear()
                    return
                self.logger.exception("Kubernetes API %s watch error", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watchers.get(kind) is watcher:
                        del self._active_watchers[kind]

    def work_forever(self, stop: threading.Event) -> None:
        while not self._should_stop(stop):
            key = self.queue.get(timeout=1.0)
            if key is None:
                continue
            try:
                self.process(key)
            finally:
                self.queue.done(key)

    def run_forever(
        self,
        shutdown_event: threading.Event | None = None,
        elected: threading.Event | None = None,
    ) -> None:
        """Run watches, workers and the background sweeper until shutdown.

        Blocks until *shutdown_event* is set or :meth:`request_stop` is called,
        then stops every loop and waits for the threads to finish.
        """
        shutdown = shutdown_event or threading.Event()
        self._external_stop.clear()
        self._synced = {}
        self.ready.clear()
        if self.queue.is_shutdown:
            self.queue = WorkQueue(clock=self._clock)

        stop = threading.Event()
        targets = self.cluster.watch_targets()
        threads = [
            threading.Thread(
                target=self.watch_forever,
                args=(target, stop, len(targets)),
                name=f"watch-{target.kind}",
                daemon=True,
            )
            for target in targets
        ]
        threads.extend(
            threading.Thread(
                target=self.work_forever, args=(stop,), name=f"worker-{index}", daemon=True
            )
            for index in range(self.config.worker_count)
        )
        if self.sweeper.enabled:
            threads.append(
                threading.Thread(
                    target=self.sweeper.run,
                    args=(stop, elected),
                    name="background-checker",
                    daemon=True,
                )
            )

        for thread in threads:
            thread.start()
        self.logger.info(
            "Controller started with %d worker(s), default egress namespace %s",
            self.config.worker_count,
            self.config.egress_namespace,
        )

        while not self._should_stop(shutdown):
            shutdown.wait(timeout=0.5)

        stop.set()
        self.request_stop()
        for thread in threads:
            thread.join(timeout=self.config.watch_timeout_seconds + 5)
            if thread.is_alive():
                self.logger.error("Thread %s did not stop in time", thread.name)
        self.ready.clear()
        self.logger.info("Controller loops stopped")
