from __future__ import annotations

from typing import Any

import pytest
from kubernetes.client import ApiException

from haegress.src.config import NODE_NAME_LABEL
from haegress.src.resources import egress_ip, gateway_node
from haegress.src.sweeper import ActivityMarker
from haegress.src.sync import FeedbackSynchronizer, SyncResult
from haegress.tests.fakes import FakeCluster, FakeRecorder, make_reconciler

NOW = "2026-01-01T00:00:00Z"


def provisioned(cluster: FakeCluster) -> FakeRecorder:
    """Reconcile policy apps/web so both derived objects exist."""
    reconciler, recorder = make_reconciler(cluster, marker=ActivityMarker(clock=lambda: 0.0))
    reconciler.reconcile(cluster.add_policy("web"))
    cluster.writes.clear()
    recorder.events.clear()
    return recorder


def make_synchronizer(cluster: FakeCluster, recorder: FakeRecorder) -> FeedbackSynchronizer:
    return FeedbackSynchronizer(cluster=cluster, recorder=recorder, now_fn=lambda: NOW)


def observed(cluster: FakeCluster) -> tuple[dict[str, Any], dict[str, Any]]:
    return (
        cluster.get_service("egress-system", "web"),
        cluster.get_gateway_policy("egress-system-web"),
    )


def test_sync_converges_address_node_and_status() -> None:
    cluster = FakeCluster()
    recorder = provisioned(cluster)
    cluster.allocate("egress-system", "web", "10.0.0.5", host="node-3")
    synchronizer = make_synchronizer(cluster, recorder)

    result = synchronizer.sync(*observed(cluster))

    assert result == SyncResult(address_written=True, status_updated=True, node_patched=True)
    gateway_policy = cluster.gateway_policies["egress-system-web"]
    assert egress_ip(gateway_policy) == "10.0.0.5"
    assert gateway_node(gateway_policy) == "node-3"
    assert cluster.policy("apps", "web")["status"] == {
        "ipAddress": "10.0.0.5",
        "exitNode": "node-3",
        "lastModifiedTime": NOW,
    }
    assert recorder.reasons() == [
        ("CiliumEgressGatewayPolicy", "Normal", "EgressUpdated"),
        ("Service", "Normal", "EgressUpdated"),
    ]
    gateway_message = recorder.events[0][4]
    service_message = recorder.events[1][4]
    assert f"{NODE_NAME_LABEL}=node-3" in gateway_message
    assert "egress-system/web" in gateway_message
    assert "egress-system-web" in service_message


def test_sync_rerun_after_convergence_writes_nothing() -> None:
    cluster = FakeCluster()
    recorder = provisioned(cluster)
    cluster.allocate("egress-system", "web", "10.0.0.5", host="node-3")
    synchronizer = make_synchronizer(cluster, recorder)
    synchronizer.sync(*observed(cluster))
    cluster.writes.clear()
    recorder.events.clear()

    result = synchronizer.sync(*observed(cluster))

    assert result == SyncResult()
    assert cluster.writes == []
    assert recorder.events == []


def test_sync_with_stale_gateway_policy_reads_current_state() -> None:
    cluster = FakeCluster()
    recorder = provisioned(cluster)
    cluster.allocate("egress-system", "web", "10.0.0.5", host="node-3")
    service, stale_gateway_policy = observed(cluster)
    synchronizer = make_synchronizer(cluster, recorder)
    synchronizer.sync(service, stale_gateway_policy)
    cluster.writes.clear()

    result = synchronizer.sync(service, stale_gateway_policy)

    assert result == SyncResult()
    assert cluster.writes == []


def test_sync_without_host_writes_only_address() -> None:
    cluster = FakeCluster()
    recorder = provisioned(cluster)
    cluster.allocate("egress-system", "web", "10.0.0.5")
    synchronizer = make_synchronizer(cluster, recorder)

    result = synchronizer.sync(*observed(cluster))

    assert result == SyncResult(address_written=True, status_updated=True)
    gateway_policy = cluster.gateway_policies["egress-system-web"]
    assert egress_ip(gateway_policy) == "10.0.0.5"
    assert gateway_node(gateway_policy) == ""
    status = cluster.policy("apps", "web")["status"]
    assert status["ipAddress"] == "10.0.0.5"
    assert "exitNode" not in status
    assert recorder.events == []


def test_sync_without_address_still_moves_node() -> None:
    cluster = FakeCluster()
    recorder = provisioned(cluster)
    cluster.services[("egress-system", "web")]["metadata"]["annotations"] = {
        "kube-vip.io/vipHost": "node-2"
    }
    synchronizer = make_synchronizer(cluster, recorder)

    result = synchronizer.sync(*observed(cluster))

    assert result == SyncResult(status_updated=True, node_patched=True)
    assert gateway_node(cluster.gateway_policies["egress-system-web"]) == "node-2"
    assert ("replace_gateway_policy", "egress-system-web") not in cluster.writes


def test_concurrent_change_during_node_patch_requeues() -> None:
    cluster = FakeCluster()
    recorder = provisioned(cluster)
    cluster.allocate("egress-system", "web", "10.0.0.5", host="node-3")
    synchronizer = make_synchronizer(cluster, recorder)

    def concurrent_writer(method: str, name: str) -> None:
        if method != "patch_gateway_policy":
            return
        cluster.before_write = None
        stored = cluster.gateway_policies[name]
        stored["spec"]["egressGateway"]["nodeSelector"]["matchLabels"][NODE_NAME_LABEL] = "node-7"
        stored["metadata"]["resourceVersion"] = "concurrent"

    cluster.before_write = concurrent_writer

    result = synchronizer.sync(*observed(cluster))

    assert result.requeue is True
    assert result.node_patched is False
    assert gateway_node(cluster.gateway_policies["egress-system-web"]) == "node-7"
    assert recorder.events == []


def test_requeued_sync_converges_on_retry() -> None:
    cluster = FakeCluster()
    recorder = provisioned(cluster)
    cluster.allocate("egress-system", "web", "10.0.0.5", host="node-3")
    synchronizer = make_synchronizer(cluster, recorder)
    cluster.fail["patch_gateway_policy"] = ApiException(status=409, reason="Conflict")

    assert synchronizer.sync(*observed(cluster)).requeue is True

    result = synchronizer.sync(*observed(cluster))

    assert result == SyncResult(node_patched=True)
    assert gateway_node(cluster.gateway_policies["egress-system-web"]) == "node-3"


def test_address_write_failure_requeues_without_status() -> None:
    cluster = FakeCluster()
    recorder = provisioned(cluster)
    cluster.allocate("egress-system", "web", "10.0.0.5", host="node-3")
    cluster.fail["replace_gateway_policy"] = ApiException(status=409, reason="Conflict")
    synchronizer = make_synchronizer(cluster, recorder)

    result = synchronizer.sync(*observed(cluster))

    assert result == SyncResult(requeue=True)
    assert "status" not in cluster.policy("apps", "web")
    assert egress_ip(cluster.gateway_policies["egress-system-web"]) == ""


def test_status_write_failure_does_not_stop_node_patch() -> None:
    cluster = FakeCluster()
    recorder = provisioned(cluster)
    cluster.allocate("egress-system", "web", "10.0.0.5", host="node-3")
    cluster.fail["replace_policy_status"] = ApiException(status=500, reason="boom")
    synchronizer = make_synchronizer(cluster, recorder)

    result = synchronizer.sync(*observed(cluster))

    assert result == SyncResult(address_written=True, status_updated=True, node_patched=True)
    status = cluster.policy("apps", "web")["status"]
    assert "ipAddress" not in status
    assert status["exitNode"] == "node-3"

    synchronizer.sync(*observed(cluster))

    assert cluster.policy("apps", "web")["status"]["ipAddress"] == "10.0.0.5"


def test_owner_unavailable_skips_sync() -> None:
    cluster = FakeCluster()
    recorder = provisioned(cluster)
    cluster.allocate("egress-system", "web", "10.0.0.5", host="node-3")
    cluster.fail["get_policy"] = ApiException(status=500, reason="boom")
    synchronizer = make_synchronizer(cluster, recorder)

    result = synchronizer.sync(*observed(cluster))

    assert result == SyncResult()
    assert cluster.writes == []


def test_gateway_policy_without_owner_is_not_written() -> None:
    cluster = FakeCluster()
    recorder = FakeRecorder()
    cluster.put_gateway_policy(
        {"kind": "CiliumEgressGatewayPolicy", "metadata": {"name": "orphan"}, "spec": {}}
    )
    service = cluster.put_service(
        {
            "kind": "Service",
            "metadata": {
                "name": "orphan",
                "namespace": "egress-system",
                "annotations": {"kube-vip.io/vipHost": "node-1"},
            },
            "status": {"loadBalancer": {"ingress": [{"ip": "10.0.0.9"}]}},
        }
    )
    synchronizer = make_synchronizer(cluster, recorder)

    result = synchronizer.sync(service, cluster.get_gateway_policy("orphan"))

    assert result == SyncResult()
    assert cluster.writes == []
    assert egress_ip(cluster.gateway_policies["orphan"]) == ""
    assert recorder.reasons() == [("Service", "Warning", "AlreadyExists")]


def test_gateway_policy_controlled_by_another_policy_is_not_written() -> None:
    cluster = FakeCluster()
    recorder = provisioned(cluster)
    stored = cluster.gateway_policies["egress-system-web"]
    stored["metadata"]["ownerReferences"][0]["uid"] = "someone-else"
    cluster.allocate("egress-system", "web", "10.0.0.5", host="node-3")
    synchronizer = make_synchronizer(cluster, recorder)

    result = synchronizer.sync(*observed(cluster))

    assert result == SyncResult()
    assert cluster.writes == []
    assert egress_ip(stored) == ""
    assert "status" not in cluster.policy("apps", "web")
    assert recorder.reasons() == [("HAEgressGatewayPolicy", "Warning", "AlreadyExists")]
    assert "egress-system-web" in recorder.events[0][4]


def test_service_not_controlled_by_policy_is_not_synced() -> None:
    cluster = FakeCluster()
    recorder = provisioned(cluster)
    cluster.allocate("egress-system", "web", "10.0.0.5", host="node-3")
    cluster.services[("egress-system", "web")]["metadata"]["ownerReferences"] = []
    synchronizer = make_synchronizer(cluster, recorder)

    result = synchronizer.sync(*observed(cluster))

    assert result == SyncResult()
    assert cluster.writes == []
    assert recorder.reasons() == [("HAEgressGatewayPolicy", "Warning", "AlreadyExists")]
    assert "'web'" in recorder.events[0][4]


def test_unlabelled_gateway_policy_finds_owner_by_uid() -> None:
    cluster = FakeCluster()
    recorder = provisioned(cluster)
    cluster.gateway_policies["egress-system-web"]["metadata"]["labels"] = {}
    cluster.allocate("egress-system", "web", "10.0.0.5", host="node-3")
    synchronizer = make_synchronizer(cluster, recorder)

    result = synchronizer.sync(*observed(cluster))

    assert result == SyncResult(address_written=True, status_updated=True, node_patched=True)
    assert ("list_policies", "") in cluster.reads
    status = cluster.policy("apps", "web")["status"]
    assert status["ipAddress"] == "10.0.0.5"
    assert status["exitNode"] == "node-3"


def test_unlabelled_gateway_policy_with_vanished_owner_skips_sync() -> None:
    cluster = FakeCluster()
    recorder = provisioned(cluster)
    cluster.gateway_policies["egress-system-web"]["metadata"]["labels"] = {}
    cluster.allocate("egress-system", "web", "10.0.0.5", host="node-3")
    del cluster.policies[("apps", "web")]
    synchronizer = make_synchronizer(cluster, recorder)

    result = synchronizer.sync(*observed(cluster))

    assert result == SyncResult()
    assert cluster.writes == []


def test_refresh_failure_propagates() -> None:
    cluster = FakeCluster()
    recorder = provisioned(cluster)
    cluster.allocate("egress-system", "web", "10.0.0.5", host="node-3")
    service, gateway_policy = observed(cluster)
    cluster.fail["get_gateway_policy"] = ApiException(status=503, reason="Unavailable")
    synchronizer = make_synchronizer(cluster, recorder)

    with pytest.raises(ApiException):
        synchronizer.sync(service, gateway_policy)


def test_node_patch_failure_other_than_conflict_propagates() -> None:
    cluster = FakeCluster()
    recorder = provisioned(cluster)
    cluster.allocate("egress-system", "web", "10.0.0.5", host="node-3")
    cluster.fail["patch_gateway_policy"] = ApiException(status=500, reason="boom")
    synchronizer = make_synchronizer(cluster, recorder)

    with pytest.raises(ApiException) as excinfo:
        synchronizer.sync(*observed(cluster))

    assert excinfo.value.status == 500
    assert egress_ip(cluster.gateway_policies["egress-system-web"]) == "10.0.0.5"
