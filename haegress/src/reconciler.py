from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException

from haegress.src.config import GATEWAY_POLICY_KIND
from haegress.src.events import (
    REASON_ALREADY_EXISTS,
    REASON_CREATED,
    REASON_UPDATED,
    EventRecorder,
)
from haegress.src.kube import is_not_found
from haegress.src.metrics import METRICS
from haegress.src.resources import (
    Manifest,
    desired_gateway_policy,
    desired_probe_service,
    display_name,
    is_controlled_by,
    metadata,
    name_of,
    service_selector,
    target_namespace,
    workload_selectors,
)
from haegress.src.sweeper import ActivityMarker
from haegress.src.sync import FeedbackSynchronizer

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"
FOREIGN = "foreign"


@dataclass(frozen=True)
class ReconcileOutcome:
    """Action taken on each derived object of one policy."""

    gateway_policy: str
    probe_service: str
    requeue: bool = False


class DriftReconciler:
    """Create or patch the CiliumEgressGatewayPolicy and probe Service of a policy.

    Only the fields the controller owns are compared after creation: the
    workload selectors of the gateway policy and the selector of the Service.
    Anything else on those objects may be edited by hand without the
    controller reverting it.  Objects with the right name but no controller
    reference to the policy are reported through a warning event and never
    touched.
    """

    def __init__(
        self,
        cluster: Any,
        recorder: EventRecorder,
        synchronizer: FeedbackSynchronizer,
        egress_namespace: str,
        load_balancer_class: str,
        marker: ActivityMarker,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cluster = cluster
        self.recorder = recorder
        self.synchronizer = synchronizer
        self.egress_namespace = egress_namespace
        self.load_balancer_class = load_balancer_class
        self.marker = marker
        self.logger = logger or logging.getLogger(__name__)

    def reconcile(self, policy: Manifest) -> ReconcileOutcome:
        self.marker.touch()
        namespace = target_namespace(policy, self.egress_namespace)
        gateway_action, requeue = self.ensure_gateway_policy(policy, namespace)
        service_action = self.ensure_probe_service(policy, namespace)
        return ReconcileOutcome(
            gateway_policy=gateway_action,
            probe_service=service_action,
            requeue=requeue,
        )

    def _report_foreign(self, policy: Manifest, kind: str, existing: Manifest) -> str:
        self.logger.error(
            "%s %s already exists and is not controlled by policy %s",
            kind,
            display_name(existing),
            display_name(policy),
        )
        self.recorder.warning(
            policy,
            REASON_ALREADY_EXISTS,
            f"Resource {name_of(existing)!r} already exists and is not managed by "
            f"HAEgressGatewayPolicy",
        )
        METRICS.foreign_objects_total.labels(kind=kind).inc()
        return FOREIGN

    def ensure_gateway_policy(self, policy: Manifest, namespace: str) -> tuple[str, bool]:
        """Return the action taken and whether the caller should requeue."""
        desired = desired_gateway_policy(policy, namespace)
        name = name_of(desired)
        try:
            existing = self.cluster.get_gateway_policy(name)
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            existing = None

        if existing is None:
            self.logger.info(
                "Creating %s %s for policy %s", GATEWAY_POLICY_KIND, name, display_name(policy)
            )
            created = self.cluster.create_gateway_policy(desired)
            METRICS.derived_writes_total.labels(kind=GATEWAY_POLICY_KIND, action=CREATED).inc()
            self.recorder.normal(
                policy, REASON_CREATED, f"{GATEWAY_POLICY_KIND} {name!r} created"
            )
            return CREATED, self._sync_existing_service(policy, namespace, created)

        if not is_controlled_by(existing, policy):
            return self._report_foreign(policy, GATEWAY_POLICY_KIND, existing), False

        wanted = workload_selectors(desired)
        if workload_selectors(existing) == wanted:
            return UNCHANGED, False

        self.cluster.patch_gateway_policy(
            name,
            {
                "metadata": {"resourceVersion": metadata(existing).get("resourceVersion")},
                "spec": {"selectors": wanted},
            },
        )
        METRICS.derived_writes_total.labels(kind=GATEWAY_POLICY_KIND, action=UPDATED).inc()
        self.logger.info("%s %s updated", GATEWAY_POLICY_KIND, name)
        self.recorder.normal(policy, REASON_UPDATED, f"{GATEWAY_POLICY_KIND} {name!r} updated")
        return UPDATED, False

    def _sync_existing_service(
        self, policy: Manifest, namespace: str, gateway_policy: Manifest
    ) -> bool:
        """Feed an already allocated address into a freshly created gateway policy."""
        try:
            service = self.cluster.get_service(namespace, name_of(policy))
        except ApiException as exc:
            if is_not_found(exc):
                return False
            raise
        if not is_controlled_by(service, policy):
            # Reported by ensure_probe_service.
            return False
        return self.synchronizer.sync(service, gateway_policy).requeue

    def ensure_probe_service(self, policy: Manifest, namespace: str) -> str:
        desired = desired_probe_service(policy, namespace, self.load_balancer_class)
        name = name_of(desired)
        try:
            existing = self.cluster.get_service(namespace, name)
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            existing = None

        if existing is None:
            self.logger.info(
                "Creating Service %s/%s for policy %s", namespace, name, display_name(policy)
            )
            self.cluster.create_service(namespace, desired)
            METRICS.derived_writes_total.labels(kind="Service", action=CREATED).inc()
            self.recorder.normal(policy, REASON_CREATED, f"Service {namespace}/{name} created")
            return CREATED

        if not is_controlled_by(existing, policy):
            return self._report_foreign(policy, "Service", existing)

        wanted = service_selector(desired)
        observed = service_selector(existing)
        if observed == wanted:
            return UNCHANGED

        # null removes keys that are not part of the desired selector
        selector: dict[str, str | None] = {key: None for key in observed if key not in wanted}
        selector.update(wanted)
        self.logger.info("Updating Service %s/%s controlled by policy", namespace, name)
        self.cluster.patch_service(
            namespace,
            name,
            {
                "metadata": {"resourceVersion": metadata(existing).get("resourceVersion")},
                "spec": {"selector": selector},
            },
        )
        METRICS.derived_writes_total.labels(kind="Service", action=UPDATED).inc()
        self.recorder.normal(policy, REASON_UPDATED, f"Service {namespace}/{name} updated")
        return UPDATED
