from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from kubernetes import client
from kubernetes.client import ApiException, CoreV1Api

from haegress.src.resources import metadata

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

REASON_CREATED = "Created"
REASON_UPDATED = "Updated"
REASON_ALREADY_EXISTS = "AlreadyExists"
REASON_EGRESS_UPDATED = "EgressUpdated"

# Events of cluster-scoped objects are recorded here, like client-go does.
CLUSTER_SCOPED_EVENT_NAMESPACE = "default"


class EventRecorder:
    """Append ``v1`` Events to the history of an object.

    Recording is best effort: an Event that cannot be written is logged and
    dropped, it never fails the reconciliation that produced it.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        component: str = "haegress-controller",
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.component = component
        self.logger = logger or logging.getLogger(__name__)

    def event(self, obj: dict[str, Any], event_type: str, reason: str, message: str) -> None:
        meta = metadata(obj)
        name = meta.get("name") or ""
        namespace = meta.get("namespace") or CLUSTER_SCOPED_EVENT_NAMESPACE
        now = datetime.now(UTC)
        body = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{name}.", namespace=namespace),
            involved_object=client.V1ObjectReference(
                api_version=obj.get("apiVersion"),
                kind=obj.get("kind"),
                name=name,
                namespace=meta.get("namespace"),
                uid=meta.get("uid"),
                resource_version=meta.get("resourceVersion"),
            ),
            type=event_type,
            reason=reason,
            message=message,
            source=client.V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.core_api.create_namespaced_event(namespace=namespace, body=body)
        except ApiException as exc:
            self.logger.warning(
                "Failed to record %s event %s on %s %s: %s",
                event_type,
                reason,
                obj.get("kind"),
                name,
                exc.reason,
            )

    def normal(self, obj: dict[str, Any], reason: str, message: str) -> None:
        self.event(obj, EVENT_NORMAL, reason, message)

    def warning(self, obj: dict[str, Any], reason: str, message: str) -> None:
        self.event(obj, EVENT_WARNING, reason, message)
