from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from haegress.src.config import POLICY_KIND
from haegress.src.resources import (
    find_owner,
    find_policy_by_uid,
    ingress_address,
    name_of,
    namespace_of,
    owner_namespace,
)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"

PolicyLister = Callable[[], Iterable[dict[str, Any]]]


@dataclass(frozen=True, order=True)
class ReconcileRequest:
    """Reconcile the policy ``namespace/name``."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"policy {self.namespace}/{self.name}"


@dataclass(frozen=True, order=True)
class SyncRequest:
    """Feed the address and node of Service ``namespace/name`` back to its policy."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"service {self.namespace}/{self.name}"


def requests_for_owner(
    obj: dict[str, Any], list_policies: PolicyLister | None = None
) -> list[ReconcileRequest]:
    """Map a derived object to the reconcile request of its owning policy.

    The owner-tracking label names the policy namespace.  Without it the
    owner is looked up by uid among *list_policies*, and only then does the
    object's own namespace stand in.
    """
    reference = find_owner(obj, POLICY_KIND)
    if reference is None or not reference.get("name"):
        return []
    namespace = owner_namespace(obj)
    if not namespace and list_policies is not None:
        policy = find_policy_by_uid(reference, list_policies())
        if policy is not None:
            namespace = namespace_of(policy)
    return [ReconcileRequest(namespace=namespace or namespace_of(obj), name=reference["name"])]


def request_for_policy(policy: dict[str, Any]) -> ReconcileRequest:
    return ReconcileRequest(namespace=namespace_of(policy), name=name_of(policy))


def should_reconcile_derived(event_type: str) -> bool:
    # Only deletions: the controller's own writes to derived objects must not
    # enqueue their policy again.
    return event_type == DELETED


def needs_feedback_sync(event_type: str, service: dict[str, Any]) -> bool:
    return event_type != DELETED and bool(ingress_address(service))


def route_policy_event(event_type: str, policy: dict[str, Any]) -> list[ReconcileRequest]:
    if not name_of(policy):
        return []
    return [request_for_policy(policy)]


def route_derived_event(
    event_type: str, obj: dict[str, Any], list_policies: PolicyLister | None = None
) -> list[ReconcileRequest]:
    if not should_reconcile_derived(event_type):
        return []
    return requests_for_owner(obj, list_policies)


def route_service_event(
    event_type: str, service: dict[str, Any], list_policies: PolicyLister | None = None
) -> list[ReconcileRequest | SyncRequest]:
    """Route a probe Service event.

    Deleting the Service reconciles its policy so it is recreated; any other
    event carrying an allocated address is synced back to the policy.
    """
    routed: list[ReconcileRequest | SyncRequest] = list(
        route_derived_event(event_type, service, list_policies)
    )
    if needs_feedback_sync(event_type, service) and find_owner(service, POLICY_KIND) is not None:
        routed.append(SyncRequest(namespace=namespace_of(service), name=name_of(service)))
    return routed
