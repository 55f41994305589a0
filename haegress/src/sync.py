from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException

from haegress.src.config import GATEWAY_POLICY_KIND, NODE_NAME_LABEL
from haegress.src.events import REASON_ALREADY_EXISTS, REASON_EGRESS_UPDATED, EventRecorder
from haegress.src.kube import is_conflict
from haegress.src.metrics import METRICS
from haegress.src.resources import (
    Manifest,
    current_host,
    display_name,
    egress_ip,
    find_owner,
    find_policy_by_uid,
    gateway_node,
    ingress_address,
    is_controlled_by,
    metadata,
    name_of,
    owner_namespace,
    policy_status,
    utc_now_rfc3339,
)


@dataclass(frozen=True)
class SyncResult:
    """What a single feedback synchronization changed.

    ``requeue`` is set when a conditional write lost a race and the caller
    should retry after a backoff instead of treating the sync as failed.
    """

    address_written: bool = False
    status_updated: bool = False
    node_patched: bool = False
    requeue: bool = False


class FeedbackSynchronizer:
    """Propagate the allocator's address and active node back to the cluster.

    Reads the first ingress address of a probe Service and the node named by
    its ``kube-vip.io/vipHost`` annotation, then writes them into the
    CiliumEgressGatewayPolicy and into the owning policy's status.  Nothing is
    written unless both objects are controlled by that policy.

    Every step re-derives what to write from the objects observed during this
    call, so a partially applied sync is completed by the next one.
    """

    def __init__(
        self,
        cluster: Any,
        recorder: EventRecorder,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.cluster = cluster
        self.recorder = recorder
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def _owning_policy(
        self, gateway_policy: Manifest, reference: dict[str, Any]
    ) -> Manifest | None:
        """Fetch the policy named by *reference*; None when it cannot be read."""
        namespace = owner_namespace(gateway_policy)
        try:
            if namespace:
                return self.cluster.get_policy(namespace, reference["name"])
            # Unlabelled: the owner reference uid is the only link left.
            policy = find_policy_by_uid(reference, self.cluster.list_policies())
        except ApiException as exc:
            self.logger.error(
                "Unable to fetch policy %s owning %s %s: %s",
                f"{namespace}/{reference['name']}" if namespace else reference["name"],
                GATEWAY_POLICY_KIND,
                name_of(gateway_policy),
                exc.reason,
            )
            return None
        if policy is None:
            self.logger.error(
                "No policy with uid %s owns %s %s",
                reference.get("uid"),
                GATEWAY_POLICY_KIND,
                name_of(gateway_policy),
            )
        return policy

    def _refuse_foreign(
        self, service: Manifest, gateway_policy: Manifest, policy: Manifest | None
    ) -> SyncResult:
        if policy is not None and is_controlled_by(gateway_policy, policy):
            kind, foreign = "Service", service
        else:
            kind, foreign = GATEWAY_POLICY_KIND, gateway_policy
        self.logger.error(
            "%s %s is not controlled by policy %s, not syncing Service %s",
            kind,
            display_name(foreign),
            display_name(policy) if policy is not None else "<none>",
            display_name(service),
        )
        self.recorder.warning(
            policy if policy is not None else service,
            REASON_ALREADY_EXISTS,
            f"Resource {name_of(foreign)!r} already exists and is not managed by "
            f"HAEgressGatewayPolicy",
        )
        METRICS.sync_total.labels(outcome="foreign").inc()
        return SyncResult()

    def _write_status(self, policy: Manifest, **fields: str) -> tuple[Manifest, bool]:
        updated = copy.deepcopy(policy)
        status = updated.setdefault("status", {})
        status.update(fields)
        status["lastModifiedTime"] = self.now_fn()
        try:
            return self.cluster.replace_policy_status(updated), True
        except ApiException as exc:
            self.logger.error(
                "Unable to update status of policy %s with %s: %s",
                display_name(policy),
                ", ".join(sorted(fields)),
                exc.reason,
            )
            return policy, False

    def sync(self, service: Manifest, gateway_policy: Manifest) -> SyncResult:
        reference = find_owner(gateway_policy)
        if reference is None:
            return self._refuse_foreign(service, gateway_policy, None)
        policy = self._owning_policy(gateway_policy, reference)
        if policy is None:
            METRICS.sync_total.labels(outcome="owner_unavailable").inc()
            return SyncResult()
        if not (
            is_controlled_by(gateway_policy, policy) and is_controlled_by(service, policy)
        ):
            return self._refuse_foreign(service, gateway_policy, policy)

        gateway_name = name_of(gateway_policy)
        address = ingress_address(service)
        current = gateway_policy
        address_written = False
        status_updated = False

        if address:
            # The GatewayPolicy handed in may come from an old watch event.
            try:
                current = self.cluster.get_gateway_policy(gateway_name)
            except ApiException as exc:
                self.logger.error(
                    "Unable to refresh %s %s before writing address %s: %s",
                    GATEWAY_POLICY_KIND,
                    gateway_name,
                    address,
                    exc.reason,
                )
                raise

            if not is_controlled_by(current, policy):
                return self._refuse_foreign(service, current, policy)

            if egress_ip(current) != address:
                refreshed = copy.deepcopy(current)
                egress_gateway = refreshed.setdefault("spec", {}).setdefault("egressGateway", {})
                egress_gateway["egressIP"] = address
                try:
                    current = self.cluster.replace_gateway_policy(refreshed)
                except ApiException as exc:
                    self.logger.warning(
                        "Unable to write address %s to %s %s, retrying later: %s",
                        address,
                        GATEWAY_POLICY_KIND,
                        gateway_name,
                        exc.reason,
                    )
                    METRICS.sync_total.labels(outcome="requeue").inc()
                    return SyncResult(requeue=True)
                address_written = True
                self.logger.info(
                    "Updated %s %s with load balancer address %s",
                    GATEWAY_POLICY_KIND,
                    gateway_name,
                    address,
                )

            if policy_status(policy).get("ipAddress") != address:
                policy, written = self._write_status(policy, ipAddress=address)
                status_updated = status_updated or written

        host = current_host(service)
        if not host:
            self.logger.debug("Service %s has no active node yet, ignoring", display_name(service))
            METRICS.sync_total.labels(outcome="unassigned").inc()
            return SyncResult(address_written=address_written, status_updated=status_updated)

        if policy_status(policy).get("exitNode") != host:
            policy, written = self._write_status(policy, exitNode=host)
            status_updated = status_updated or written

        policy_host = gateway_node(current)
        if policy_host == host:
            self.logger.debug(
                "%s %s already targets node %s", GATEWAY_POLICY_KIND, gateway_name, host
            )
            METRICS.sync_total.labels(outcome="converged").inc()
            return SyncResult(address_written=address_written, status_updated=status_updated)

        self.logger.info(
            "%s %s should move from node %r to %r",
            GATEWAY_POLICY_KIND,
            gateway_name,
            policy_host,
            host,
        )
        patch = {
            "metadata": {"resourceVersion": metadata(current).get("resourceVersion")},
            "spec": {"egressGateway": {"nodeSelector": {"matchLabels": {NODE_NAME_LABEL: host}}}},
        }
        try:
            current = self.cluster.patch_gateway_policy(gateway_name, patch)
        except ApiException as exc:
            if is_conflict(exc):
                self.logger.warning(
                    "%s %s changed while patching node %s, retrying later",
                    GATEWAY_POLICY_KIND,
                    gateway_name,
                    host,
                )
                METRICS.sync_total.labels(outcome="requeue").inc()
                return SyncResult(
                    address_written=address_written,
                    status_updated=status_updated,
                    requeue=True,
                )
            self.logger.error(
                "Unable to patch %s %s with node %s: %s",
                GATEWAY_POLICY_KIND,
                gateway_name,
                host,
                exc.reason,
            )
            raise

        self.recorder.normal(
            current,
            REASON_EGRESS_UPDATED,
            f"Updated with new nodeSelector {NODE_NAME_LABEL}={host} "
            f"by {display_name(service)} service",
        )
        self.recorder.normal(
            service,
            REASON_EGRESS_UPDATED,
            f"Updated {GATEWAY_POLICY_KIND} {gateway_name} with new nodeSelector "
            f"{NODE_NAME_LABEL}={host}",
        )
        METRICS.sync_total.labels(outcome="patched").inc()
        return SyncResult(
            address_written=address_written,
            status_updated=status_updated,
            node_patched=True,
        )
