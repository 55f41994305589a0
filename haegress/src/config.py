from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

IN_CLUSTER_NAMESPACE_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/namespace"

# Custom resource coordinates
POLICY_GROUP = "haegress.io"
POLICY_VERSION = "v1"
POLICY_PLURAL = "haegressgatewaypolicies"
POLICY_KIND = "HAEgressGatewayPolicy"

GATEWAY_POLICY_GROUP = "cilium.io"
GATEWAY_POLICY_VERSION = "v2"
GATEWAY_POLICY_PLURAL = "ciliumegressgatewaypolicies"
GATEWAY_POLICY_KIND = "CiliumEgressGatewayPolicy"

# Labels, annotations and selector keys
TARGET_NAMESPACE_ANNOTATION = "haegress.io/namespace"
SELECTOR_NAMESPACE_KEY = "haegress.io/target-namespace"
SELECTOR_NAME_KEY = "haegress.io/target-name"
OWNER_NAMESPACE_LABEL = "haegress.io/policy-namespace"
OWNER_NAME_LABEL = "haegress.io/policy-name"
SERVICE_PROXY_NAME_LABEL = "service.kubernetes.io/service-proxy-name"
SERVICE_PROXY_NAME = "haegress-probe"
NODE_NAME_LABEL = "kubernetes.io/hostname"
VIP_HOST_ANNOTATION = "kube-vip.io/vipHost"

PROBE_PORT_NAME = "probe"
PROBE_PORT = 65534


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class LeaderElectionConfig:
    enabled: bool
    namespace: str
    lease_name: str
    identity: str
    lease_duration_seconds: int
    renew_deadline_seconds: int
    retry_period_seconds: int


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        egress_namespace: Namespace for derived objects when a policy does not
            override it through the ``haegress.io/namespace`` annotation.
        load_balancer_class: ``spec.loadBalancerClass`` of every probe Service,
            selecting the external address allocator.
        background_checker_seconds: Sweep interval; ``0`` disables the sweeper.
        worker_count: Number of reconcile worker threads.
        requeue_base_seconds / requeue_max_seconds: Bounds of the exponential
            requeue delay applied after a failed reconcile.
    """

    egress_namespace: str
    load_balancer_class: str
    background_checker_seconds: int
    worker_count: int
    requeue_base_seconds: float
    requeue_max_seconds: float
    watch_timeout_seconds: int
    health_port: int
    log_level: str
    leader_election: LeaderElectionConfig


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def read_in_cluster_namespace(path: str | None = None) -> str:
    """Return the namespace of the service account the pod runs as.

    Raises :class:`ConfigError` when not running in a cluster.
    """
    path = path or IN_CLUSTER_NAMESPACE_PATH
    try:
        with open(path, encoding="utf-8") as handle:
            return handle.read().strip()
    except FileNotFoundError as exc:
        raise ConfigError(
            "not running in a cluster, please set LEADER_ELECTION_NAMESPACE"
        ) from exc
    except OSError as exc:
        raise ConfigError(f"error reading namespace file {path}: {exc}") from exc


def _leader_election_config(values: Mapping[str, str]) -> LeaderElectionConfig:
    enabled = parse_bool(values.get("LEADER_ELECTION_ENABLED"))
    namespace = values.get("LEADER_ELECTION_NAMESPACE", "").strip()
    if enabled and not namespace:
        namespace = read_in_cluster_namespace()

    lease_duration = env_int(values, "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1)
    renew_deadline = env_int(values, "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1)
    retry_period = env_int(values, "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1)
    if renew_deadline >= lease_duration:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period >= renew_deadline:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    return LeaderElectionConfig(
        enabled=enabled,
        namespace=namespace,
        lease_name=values.get("LEADER_ELECTION_LEASE_NAME", "haegress-controller-leader"),
        identity=values.get(
            "LEADER_ELECTION_IDENTITY",
            values.get("HOSTNAME", values.get("POD_NAME", "unknown")),
        ),
        lease_duration_seconds=lease_duration,
        renew_deadline_seconds=renew_deadline,
        retry_period_seconds=retry_period,
    )


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load the controller configuration from the environment.

    Every setting has a default suitable for an in-cluster deployment; invalid
    values raise :class:`ConfigError` so the process never starts half-configured.
    """
    values = env if env is not None else os.environ

    egress_namespace = values.get("EGRESS_DEFAULT_NAMESPACE", "egress-system").strip()
    if not egress_namespace:
        raise ConfigError("EGRESS_DEFAULT_NAMESPACE must be a non-empty string")

    load_balancer_class = values.get(
        "LOAD_BALANCER_CLASS", "kube-vip.io/kube-vip-class"
    ).strip()
    if not load_balancer_class:
        raise ConfigError("LOAD_BALANCER_CLASS must be a non-empty string")

    requeue_base = env_int(values, "REQUEUE_BASE_SECONDS", 1, minimum=1)
    requeue_max = env_int(values, "REQUEUE_MAX_SECONDS", 30, minimum=1)
    if requeue_max < requeue_base:
        raise ConfigError("REQUEUE_MAX_SECONDS must be >= REQUEUE_BASE_SECONDS")

    return ControllerConfig(
        egress_namespace=egress_namespace,
        load_balancer_class=load_balancer_class,
        background_checker_seconds=env_int(values, "BACKGROUND_CHECKER_SECONDS", 60, minimum=0),
        worker_count=env_int(values, "WORKER_COUNT", 2, minimum=1, maximum=64),
        requeue_base_seconds=float(requeue_base),
        requeue_max_seconds=float(requeue_max),
        watch_timeout_seconds=env_int(values, "WATCH_TIMEOUT_SECONDS", 30, minimum=1),
        health_port=env_int(values, "HEALTH_PORT", 8081, minimum=1, maximum=65535),
        log_level=values.get("LOG_LEVEL", "INFO").upper(),
        leader_election=_leader_election_config(values),
    )
