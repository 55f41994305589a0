from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

from haegress.src.config import (
    GATEWAY_POLICY_GROUP,
    GATEWAY_POLICY_PLURAL,
    GATEWAY_POLICY_VERSION,
    OWNER_NAME_LABEL,
    POLICY_GROUP,
    POLICY_PLURAL,
    POLICY_VERSION,
)

LOGGER = logging.getLogger(__name__)

_SERIALIZER = client.ApiClient()


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def to_manifest(obj: Any) -> dict[str, Any]:
    """Return *obj* as a plain camelCase manifest.

    Typed models (``V1Service``) and custom-object dicts come back from the API
    in different shapes; normalising them lets every kind share the same
    metadata helpers.
    """
    if obj is None:
        return {}
    manifest = _SERIALIZER.sanitize_for_serialization(obj)
    return manifest if isinstance(manifest, dict) else {}


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409


@dataclass(frozen=True)
class WatchTarget:
    """A list function plus arguments that can back a list-then-watch loop."""

    kind: str
    list_fn: Callable[..., Any]
    kwargs: dict[str, Any] = field(default_factory=dict)


class ClusterClient:
    """Typed-by-convention access to the three kinds the controller touches.

    Policies and CiliumEgressGatewayPolicies go through ``CustomObjectsApi``;
    probe Services through ``CoreV1Api``.  Every read returns a manifest dict
    and every ``ApiException`` propagates to the caller unchanged.
    """

    def __init__(self, core_api: CoreV1Api, custom_api: CustomObjectsApi) -> None:
        self.core_api = core_api
        self.custom_api = custom_api

    # Policies

    def get_policy(self, namespace: str, name: str) -> dict[str, Any]:
        return to_manifest(
            self.custom_api.get_namespaced_custom_object(
                group=POLICY_GROUP,
                version=POLICY_VERSION,
                namespace=namespace,
                plural=POLICY_PLURAL,
                name=name,
            )
        )

    def list_policies(self) -> list[dict[str, Any]]:
        response = self.custom_api.list_cluster_custom_object(
            group=POLICY_GROUP,
            version=POLICY_VERSION,
            plural=POLICY_PLURAL,
        )
        return [to_manifest(item) for item in to_manifest(response).get("items") or []]

    def replace_policy_status(self, policy: dict[str, Any]) -> dict[str, Any]:
        """Write ``policy['status']`` through the status subresource.

        The body carries the observed ``resourceVersion`` so a concurrent
        writer makes this call fail with ``409 Conflict``.
        """
        metadata = policy["metadata"]
        return to_manifest(
            self.custom_api.replace_namespaced_custom_object_status(
                group=POLICY_GROUP,
                version=POLICY_VERSION,
                namespace=metadata["namespace"],
                plural=POLICY_PLURAL,
                name=metadata["name"],
                body=policy,
            )
        )

    # CiliumEgressGatewayPolicies (cluster scoped)

    def get_gateway_policy(self, name: str) -> dict[str, Any]:
        return to_manifest(
            self.custom_api.get_cluster_custom_object(
                group=GATEWAY_POLICY_GROUP,
                version=GATEWAY_POLICY_VERSION,
                plural=GATEWAY_POLICY_PLURAL,
                name=name,
            )
        )

    def create_gateway_policy(self, body: dict[str, Any]) -> dict[str, Any]:
        return to_manifest(
            self.custom_api.create_cluster_custom_object(
                group=GATEWAY_POLICY_GROUP,
                version=GATEWAY_POLICY_VERSION,
                plural=GATEWAY_POLICY_PLURAL,
                body=body,
            )
        )

    def replace_gateway_policy(self, body: dict[str, Any]) -> dict[str, Any]:
        return to_manifest(
            self.custom_api.replace_cluster_custom_object(
                group=GATEWAY_POLICY_GROUP,
                version=GATEWAY_POLICY_VERSION,
                plural=GATEWAY_POLICY_PLURAL,
                name=body["metadata"]["name"],
                body=body,
            )
        )

    def patch_gateway_policy(self, name: str, body: dict[str, Any]) -> dict[str, Any]:
        return to_manifest(
            self.custom_api.patch_cluster_custom_object(
                group=GATEWAY_POLICY_GROUP,
                version=GATEWAY_POLICY_VERSION,
                plural=GATEWAY_POLICY_PLURAL,
                name=name,
                body=body,
            )
        )

    # Probe Services

    def get_service(self, namespace: str, name: str) -> dict[str, Any]:
        return to_manifest(self.core_api.read_namespaced_service(name=name, namespace=namespace))

    def create_service(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        return to_manifest(self.core_api.create_namespaced_service(namespace=namespace, body=body))

    def patch_service(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        return to_manifest(
            self.core_api.patch_namespaced_service(name=name, namespace=namespace, body=body)
        )

    # Watches

    def watch_targets(self) -> list[WatchTarget]:
        """Return the list functions backing the controller's three watches.

        Services are restricted to the ones carrying the owner-tracking label so
        the controller never streams every Service of the cluster.
        """
        return [
            WatchTarget(
                kind="policy",
                list_fn=self.custom_api.list_cluster_custom_object,
                kwargs={
                    "group": POLICY_GROUP,
                    "version": POLICY_VERSION,
                    "plural": POLICY_PLURAL,
                },
            ),
            WatchTarget(
                kind="gatewaypolicy",
                list_fn=self.custom_api.list_cluster_custom_object,
                kwargs={
                    "group": GATEWAY_POLICY_GROUP,
                    "version": GATEWAY_POLICY_VERSION,
                    "plural": GATEWAY_POLICY_PLURAL,
                },
            ),
            WatchTarget(
                kind="service",
                list_fn=self.core_api.list_service_for_all_namespaces,
                kwargs={"label_selector": OWNER_NAME_LABEL},
            ),
        ]


def build_cluster_client() -> ClusterClient:
    """Return a :class:`ClusterClient` using the active kube configuration."""
    return ClusterClient(core_api=client.CoreV1Api(), custom_api=client.CustomObjectsApi())
