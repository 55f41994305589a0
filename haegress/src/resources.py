from __future__ import annotations

import copy
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from haegress.src.config import (
    GATEWAY_POLICY_GROUP,
    GATEWAY_POLICY_KIND,
    GATEWAY_POLICY_VERSION,
    NODE_NAME_LABEL,
    OWNER_NAME_LABEL,
    OWNER_NAMESPACE_LABEL,
    POLICY_GROUP,
    POLICY_KIND,
    POLICY_VERSION,
    PROBE_PORT,
    PROBE_PORT_NAME,
    SELECTOR_NAME_KEY,
    SELECTOR_NAMESPACE_KEY,
    SERVICE_PROXY_NAME,
    SERVICE_PROXY_NAME_LABEL,
    TARGET_NAMESPACE_ANNOTATION,
    VIP_HOST_ANNOTATION,
)

Manifest = dict[str, Any]


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def metadata(obj: Manifest) -> dict[str, Any]:
    return obj.get("metadata") or {}


def name_of(obj: Manifest) -> str:
    return metadata(obj).get("name") or ""


def namespace_of(obj: Manifest) -> str:
    return metadata(obj).get("namespace") or ""


def labels_of(obj: Manifest) -> dict[str, str]:
    return dict(metadata(obj).get("labels") or {})


def annotations_of(obj: Manifest) -> dict[str, str]:
    return dict(metadata(obj).get("annotations") or {})


def display_name(obj: Manifest) -> str:
    namespace = namespace_of(obj)
    return f"{namespace}/{name_of(obj)}" if namespace else name_of(obj)


def owner_references(obj: Manifest) -> list[dict[str, Any]]:
    return list(metadata(obj).get("ownerReferences") or [])


def find_owner(obj: Manifest, kind: str = POLICY_KIND) -> dict[str, Any] | None:
    """Return the first owner reference of *kind* on *obj*, if any.

    Works for every derived kind because all of them are handled as manifests.
    """
    for reference in owner_references(obj):
        if reference.get("kind") == kind:
            return reference
    return None


def owner_namespace(obj: Manifest) -> str:
    """Namespace of the Policy owning *obj*, as recorded by the owner-tracking label.

    Owner references carry no namespace, and a GatewayPolicy is cluster scoped,
    so an unlabelled object yields ``""`` and its owner has to be found by uid
    with :func:`find_policy_by_uid`.
    """
    return labels_of(obj).get(OWNER_NAMESPACE_LABEL) or ""


def find_policy_by_uid(
    reference: dict[str, Any], policies: Iterable[Manifest]
) -> Manifest | None:
    uid = reference.get("uid")
    if not uid:
        return None
    for policy in policies:
        if metadata(policy).get("uid") == uid:
            return policy
    return None


def controller_uid(obj: Manifest) -> str:
    for reference in owner_references(obj):
        if reference.get("controller"):
            return reference.get("uid") or ""
    return ""


def is_controlled_by(obj: Manifest, policy: Manifest) -> bool:
    uid = metadata(policy).get("uid")
    if not uid:
        return False
    return any(
        reference.get("controller") and reference.get("uid") == uid
        for reference in owner_references(obj)
    )


def controller_reference(policy: Manifest) -> dict[str, Any]:
    return {
        "apiVersion": f"{POLICY_GROUP}/{POLICY_VERSION}",
        "kind": POLICY_KIND,
        "name": name_of(policy),
        "uid": metadata(policy).get("uid"),
        "controller": True,
        "blockOwnerDeletion": True,
    }


def target_namespace(policy: Manifest, default_namespace: str) -> str:
    """Namespace where the derived objects of *policy* live."""
    return annotations_of(policy).get(TARGET_NAMESPACE_ANNOTATION) or default_namespace


def gateway_policy_name(namespace: str, policy_name: str) -> str:
    return f"{namespace}-{policy_name}"


def _owner_labels(policy: Manifest) -> dict[str, str]:
    return {
        OWNER_NAMESPACE_LABEL: namespace_of(policy),
        OWNER_NAME_LABEL: name_of(policy),
    }


def desired_gateway_policy(policy: Manifest, namespace: str) -> Manifest:
    """Build the CiliumEgressGatewayPolicy derived from *policy*.

    Labels, annotations and spec are copied verbatim; owner-tracking labels are
    added so watch events on this cluster-scoped object can be routed back.
    """
    labels = labels_of(policy)
    labels.update(_owner_labels(policy))
    return {
        "apiVersion": f"{GATEWAY_POLICY_GROUP}/{GATEWAY_POLICY_VERSION}",
        "kind": GATEWAY_POLICY_KIND,
        "metadata": {
            "name": gateway_policy_name(namespace, name_of(policy)),
            "labels": labels,
            "annotations": annotations_of(policy),
            "ownerReferences": [controller_reference(policy)],
        },
        "spec": copy.deepcopy(policy.get("spec") or {}),
    }


def probe_selector(namespace: str, policy_name: str) -> dict[str, str]:
    # Matches no pod: the Service only exists to get an address allocated.
    return {SELECTOR_NAMESPACE_KEY: namespace, SELECTOR_NAME_KEY: policy_name}


def desired_probe_service(policy: Manifest, namespace: str, load_balancer_class: str) -> Manifest:
    labels = labels_of(policy)
    labels[SERVICE_PROXY_NAME_LABEL] = SERVICE_PROXY_NAME
    labels.update(_owner_labels(policy))
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": name_of(policy),
            "namespace": namespace,
            "labels": labels,
            "annotations": annotations_of(policy),
            "ownerReferences": [controller_reference(policy)],
        },
        "spec": {
            "type": "LoadBalancer",
            "loadBalancerClass": load_balancer_class,
            "ports": [{"name": PROBE_PORT_NAME, "protocol": "TCP", "port": PROBE_PORT}],
            "selector": probe_selector(namespace, name_of(policy)),
        },
    }


# Field accessors for the few fields the controller owns


def workload_selectors(gateway_policy: Manifest) -> list[Any]:
    return list((gateway_policy.get("spec") or {}).get("selectors") or [])


def _egress_gateway(gateway_policy: Manifest) -> dict[str, Any]:
    return (gateway_policy.get("spec") or {}).get("egressGateway") or {}


def egress_ip(gateway_policy: Manifest) -> str:
    return _egress_gateway(gateway_policy).get("egressIP") or ""


def gateway_node(gateway_policy: Manifest) -> str:
    node_selector = _egress_gateway(gateway_policy).get("nodeSelector") or {}
    return (node_selector.get("matchLabels") or {}).get(NODE_NAME_LABEL) or ""


def service_selector(service: Manifest) -> dict[str, str]:
    return dict((service.get("spec") or {}).get("selector") or {})


def ingress_address(service: Manifest) -> str:
    """First address assigned to *service* by the load-balancer allocator.

    Only the first ingress entry is considered; Services with several
    addresses are not supported.
    """
    load_balancer = (service.get("status") or {}).get("loadBalancer") or {}
    ingress = load_balancer.get("ingress") or []
    if not ingress:
        return ""
    return ingress[0].get("ip") or ""


def current_host(service: Manifest) -> str:
    return annotations_of(service).get(VIP_HOST_ANNOTATION) or ""


def policy_status(policy: Manifest) -> dict[str, Any]:
    return dict(policy.get("status") or {})
