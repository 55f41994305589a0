from __future__ import annotations

import json
import logging
import os
import signal
import threading

from haegress.src.config import ConfigError, ControllerConfig, load_config
from haegress.src.controller import EgressGatewayController
from haegress.src.events import EventRecorder
from haegress.src.health import start_health_server
from haegress.src.kube import build_cluster_client, load_kube_configuration
from haegress.src.leader import LeaseLeaderElector
from haegress.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers = [handler]
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # the kubernetes client logs every request body at DEBUG
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


def run_with_leader_election(
    controller: EgressGatewayController,
    elector: LeaseLeaderElector,
    shutdown_event: threading.Event,
    stop_timeout_seconds: float,
) -> None:
    """Run the controller loops only while this replica holds the leader lease.

    A controller thread that exits while still leading, or crashes, shuts the
    whole process down so the Deployment restarts it.
    """
    controller_thread: threading.Thread | None = None
    state_lock = threading.Lock()

    def on_started_leading() -> None:
        nonlocal controller_thread
        with state_lock:
            if shutdown_event.is_set():
                return
            if controller_thread is not None and controller_thread.is_alive():
                LOGGER.error("Previous controller thread still running; shutting down")
                shutdown_event.set()
                return

            controller_stop = threading.Event()

            def _run() -> None:
                try:
                    controller.run_forever(shutdown_event=controller_stop, elected=elector.elected)
                except Exception:
                    LOGGER.exception("Controller thread crashed")
                    shutdown_event.set()
                    return
                if elector.is_leader and not shutdown_event.is_set():
                    LOGGER.error("Controller thread exited while leading; terminating process")
                    shutdown_event.set()

            controller_thread = threading.Thread(target=_run, name="controller", daemon=True)
            controller_thread.start()

    def on_stopped_leading() -> None:
        nonlocal controller_thread
        with state_lock:
            controller.request_stop()
            if controller_thread is None:
                return
            controller_thread.join(timeout=stop_timeout_seconds)
            if controller_thread.is_alive():
                LOGGER.error(
                    "Controller thread did not stop within %ss after losing leadership; "
                    "forcing process shutdown",
                    stop_timeout_seconds,
                )
                shutdown_event.set()
                return
            controller_thread = None

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
    )
    on_stopped_leading()


def run(config: ControllerConfig, shutdown_event: threading.Event) -> None:
    load_kube_configuration()
    cluster = build_cluster_client()
    recorder = EventRecorder(core_api=cluster.core_api)
    controller = EgressGatewayController(cluster=cluster, recorder=recorder, config=config)

    elector: LeaseLeaderElector | None = None
    if config.leader_election.enabled:
        from kubernetes.client import CoordinationV1Api

        elector = LeaseLeaderElector.from_config(CoordinationV1Api(), config.leader_election)

    health_server = start_health_server(
        status_fn=controller.health_status,
        port=config.health_port,
        leader=elector.elected if elector is not None else None,
    )
    try:
        if elector is None:
            controller.run_forever(shutdown_event=shutdown_event)
        else:
            run_with_leader_election(
                controller,
                elector,
                shutdown_event,
                stop_timeout_seconds=config.watch_timeout_seconds + 15,
            )
    finally:
        health_server.shutdown()


def main() -> None:
    """Controller entrypoint: configure logging, then run until SIGTERM/SIGINT."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    try:
        config = load_config()
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        raise SystemExit(1) from exc
    configure_logging(config.log_level)

    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    run(config, shutdown_event)
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
