#!/usr/bin/env python3
"""
Kubernetes Resource Autoscaler

Periodic control loop over Deployments annotated `autoscaler/enabled: "true"`:
- pvc mode: grow PVCs by 50% when disk usage crosses the resize threshold
- ingress mode: rescale the namespace when a pod's ingress crosses the scale threshold
"""
import argparse
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

import yaml

from config import (
    setup_logging, load_settings, load_queries, validate_settings,
    AutoscalerSettings, ConfigValidationError,
    PROMETHEUS_TIMEOUT_SECONDS, SCALE_RETRY_ATTEMPTS, SCALE_RETRY_DELAY_SECONDS,
    CONVERGENCE_POLL_SECONDS, CONVERGENCE_TIMEOUT_SECONDS, WAIT_FOR_REPLICAS,
)
from models import ResizeStorage, ScaleReplicas, Target
from metrics.prometheus_client import MetricsGateway, PrometheusError
from analysis.decisions import decide_storage, decide_network
from cluster import discovery as discovery_mod
from cluster.actuator import RetryPolicy, resize_pvc, scale_namespace_deployments
from cluster.convergence import wait_for_pvc_bound, wait_for_ready_replicas
from cluster.connection import connect_to_cluster
from cluster.errors import ClusterError

logger = logging.getLogger(__name__)

MODES = ("pvc", "ingress", "pvc,ingress")


def parse_mode(mode: str) -> Tuple[bool, bool]:
    """Return (run_pvc, run_ingress) for a --mode value"""
    if mode not in MODES:
        raise ValueError(f"invalid mode {mode!r}, expected one of {', '.join(MODES)}")
    parts = mode.split(",")
    return "pvc" in parts, "ingress" in parts


@dataclass
class CycleReport:
    targets: int = 0
    claims_resized: int = 0
    deployments_scaled: int = 0
    failures: int = 0
    aborted: bool = False


class ControlLoop:
    """Discovery -> metrics -> decision -> actuation -> convergence, once per interval

    Args:
        settings: Thresholds, interval and replica fallback
        core_v1: kubernetes CoreV1Api
        apps_v1: kubernetes AppsV1Api
        gateway: Prometheus metrics gateway
        run_pvc: Enable PVC resizing
        run_ingress: Enable ingress-driven replica scaling
        retry_policy: Retry policy for replica scale writes
        stop_event: Set to stop the loop and interrupt convergence waits
        logger: Logger shared with the components (defaults to this module's logger)
    """

    def __init__(
        self,
        settings: AutoscalerSettings,
        core_v1,
        apps_v1,
        gateway: MetricsGateway,
        run_pvc: bool = True,
        run_ingress: bool = False,
        retry_policy: Optional[RetryPolicy] = None,
        stop_event: Optional[threading.Event] = None,
        wait_for_replicas: bool = WAIT_FOR_REPLICAS,
        poll_seconds: float = CONVERGENCE_POLL_SECONDS,
        wait_timeout_seconds: float = CONVERGENCE_TIMEOUT_SECONDS,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings
        self.core_v1 = core_v1
        self.apps_v1 = apps_v1
        self.gateway = gateway
        self.run_pvc = run_pvc
        self.run_ingress = run_ingress
        self.retry_policy = retry_policy or RetryPolicy()
        self.stop_event = stop_event or threading.Event()
        self.wait_for_replicas = wait_for_replicas
        self.poll_seconds = poll_seconds
        self.wait_timeout_seconds = wait_timeout_seconds
        self.log = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    def _process_claim(self, target: Target, claim: str, report: CycleReport) -> None:
        ns = target.namespace
        try:
            pvc = discovery_mod.read_claim(self.core_v1, claim, ns)
            if pvc is None:
                self.log.warning(f"PVC {claim} referenced by {ns}/{target.workload_name} does not exist, skipping")
                return

            usage = self.gateway.fetch_disk_usage_percent(claim, ns)
            self.log.info(f"Disk usage for PVC {claim} in namespace {ns}: {usage:.2f}%")

            current = discovery_mod.storage_request_bytes(pvc)
            decision = decide_storage(usage, self.settings.disk_resize_threshold, current)
            if not isinstance(decision, ResizeStorage):
                self.log.info(f"Disk usage for PVC {claim} is below threshold, no resizing needed")
                return

            new_size = resize_pvc(self.core_v1, claim, ns, decision.target_size_bytes, pvc=pvc, logger=self.log)
            self.log.info(f"Resized PVC {claim} in namespace {ns} to {new_size} bytes")
            report.claims_resized += 1

            outcome = wait_for_pvc_bound(
                self.core_v1, claim, ns,
                interval_seconds=self.poll_seconds,
                timeout_seconds=self.wait_timeout_seconds,
                cancel_event=self.stop_event,
                logger=self.log,
            )
            outcome.raise_for_state()
            self.log.info(f"PVC {claim} in namespace {ns} is ready")
        except PrometheusError as e:
            self.log.error(f"Error fetching disk usage for PVC {claim} in namespace {ns}: {e}")
            report.failures += 1
        except ClusterError as e:
            self.log.error(f"Error handling PVC {claim} in namespace {ns}: {e}")
            report.failures += 1

    def process_storage(self, targets: List[Target], report: CycleReport) -> None:
        self.log.info("Running in PVC resizing mode...")
        for target in targets:
            if not target.storage_claim_names:
                self.log.info(f"Deployment {target.namespace}/{target.workload_name} has no PVCs")
                continue
            self.log.info(f"Checking PVCs for deployment {target.workload_name} in namespace {target.namespace}")
            for claim in target.storage_claim_names:
                self._process_claim(target, claim, report)

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------
    def _scale_namespace(self, target: Target, decision: ScaleReplicas, report: CycleReport) -> None:
        ns = target.namespace
        results = scale_namespace_deployments(
            self.apps_v1, ns, decision.desired_count,
            retry_policy=self.retry_policy, logger=self.log,
        )
        triggering = None
        for result in results:
            if result.outcome.succeeded:
                report.deployments_scaled += 1
            else:
                report.failures += 1
                self.log.error(
                    f"Giving up scaling deployment {ns}/{result.deployment} after "
                    f"{result.outcome.attempts_used} attempt(s): {result.outcome.last_error}"
                )
            if result.deployment == target.workload_name:
                triggering = result

        if not (self.wait_for_replicas and triggering and triggering.outcome.succeeded):
            return
        outcome = wait_for_ready_replicas(
            self.apps_v1, target.workload_name, ns, triggering.desired_replicas,
            interval_seconds=self.poll_seconds,
            timeout_seconds=self.wait_timeout_seconds,
            cancel_event=self.stop_event,
            logger=self.log,
        )
        outcome.raise_for_state()
        self.log.info(f"Deployment {ns}/{target.workload_name} has {triggering.desired_replicas} ready replicas")

    def _process_target_network(self, target: Target, report: CycleReport) -> None:
        ns = target.namespace
        self.log.info(f"Checking network usage for deployment {target.workload_name} in namespace {ns}")
        try:
            pods = discovery_mod.get_pods_for_deployment(self.core_v1, self.apps_v1, target.workload_name, ns)
        except ClusterError as e:
            self.log.error(f"Error fetching pods for deployment {target.workload_name} in namespace {ns}: {e}")
            report.failures += 1
            return

        scaled = False
        for pod in pods:
            try:
                sample = self.gateway.fetch_network_usage(pod.name, pod.namespace)
            except PrometheusError as e:
                self.log.error(f"Error fetching network usage for pod {pod.name} in namespace {ns}: {e}")
                report.failures += 1
                continue

            egress = f"{sample.egress:.2f}" if sample.egress is not None else "unavailable"
            self.log.info(
                f"Ingress: {sample.ingress:.2f} bytes/sec, Egress: {egress} bytes/sec "
                f"for pod {pod.name} in namespace {ns}"
            )

            decision = decide_network(sample.ingress, self.settings.ingress_scale_threshold,
                                      self.settings.desired_replica_count)
            if not isinstance(decision, ScaleReplicas):
                continue
            if scaled:
                # One namespace rescale per target per cycle
                self.log.info(f"Ingress for pod {pod.name} exceeds threshold, namespace {ns} already rescaled")
                continue

            self.log.info(
                f"Ingress for pod {pod.name} exceeds threshold, re-evaluating deployments in namespace {ns}"
            )
            scaled = True
            try:
                self._scale_namespace(target, decision, report)
            except ClusterError as e:
                self.log.error(f"Error scaling deployments in namespace {ns}: {e}")
                report.failures += 1

    def process_network(self, targets: List[Target], report: CycleReport) -> None:
        self.log.info("Running in ingress scaling mode...")
        for target in targets:
            self._process_target_network(target, report)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    def run_cycle(self) -> CycleReport:
        report = CycleReport()
        self.log.info("Starting new monitoring cycle...")
        try:
            targets, found = discovery_mod.discover_targets(self.core_v1, self.apps_v1, logger=self.log)
        except ClusterError as e:
            self.log.error(f"Error checking annotations: {e}")
            report.aborted = True
            return report

        if not found:
            self.log.warning("No deployments with the autoscaler annotation found")
            return report

        report.targets = len(targets)
        self.log.info(f"Found {len(targets)} deployments with annotations")
        for t in targets:
            self.log.info(f"Deployment: {t.workload_name}, Namespace: {t.namespace}, PVCs: {list(t.storage_claim_names)}")

        if self.run_pvc:
            self.process_storage(targets, report)
        if self.run_ingress:
            self.process_network(targets, report)

        self.log.info(
            f"Cycle complete: {report.claims_resized} PVC(s) resized, "
            f"{report.deployments_scaled} deployment(s) scaled, {report.failures} failure(s)"
        )
        return report

    def run_forever(self) -> None:
        interval_seconds = self.settings.interval_minutes * 60
        while not self.stop_event.is_set():
            self.run_cycle()
            self.log.info(f"Waiting {self.settings.interval_minutes} minute(s) before the next cycle")
            self.stop_event.wait(interval_seconds)
        self.log.info("Autoscaler stopped")

    def stop(self, *_args) -> None:
        self.stop_event.set()


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Kubernetes resource autoscaler")
    parser.add_argument("--mode", required=True, choices=MODES,
                        help="'pvc' for PVC resizing, 'ingress' for ingress scaling, 'pvc,ingress' for both")
    parser.add_argument("--config", default=None, help="Autoscaler config file (default: config.yaml)")
    parser.add_argument("--queries", default=None, help="PromQL query template file (default: the config file)")
    parser.add_argument("--kubeconfig", default=None, help="Path to kubeconfig (default: KUBECONFIG or in-cluster)")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    # argparse prints usage and exits with status 2 on a missing or invalid mode
    args = build_arg_parser().parse_args(argv)

    setup_logging()
    logger.info("Starting Kubernetes Resource Autoscaler...")
    run_pvc, run_ingress = parse_mode(args.mode)

    try:
        settings = load_settings(args.config)
        queries = load_queries(args.queries or args.config)
        validate_settings(settings, queries, run_pvc=run_pvc, run_ingress=run_ingress)
        logger.info("Configuration validated successfully")
    except FileNotFoundError as e:
        logger.error(f"Configuration file not found: {e.filename}")
        return 1
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML configuration: {e}")
        return 1
    except ConfigValidationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    try:
        clients = connect_to_cluster(args.kubeconfig)
    except ClusterError as e:
        logger.error(f"Error connecting to cluster: {e}")
        return 1

    gateway = MetricsGateway(settings.prometheus_url, queries, timeout=PROMETHEUS_TIMEOUT_SECONDS)
    loop = ControlLoop(
        settings, clients.core_v1, clients.apps_v1, gateway,
        run_pvc=run_pvc, run_ingress=run_ingress,
        retry_policy=RetryPolicy(max_attempts=SCALE_RETRY_ATTEMPTS, delay_seconds=SCALE_RETRY_DELAY_SECONDS),
    )

    if args.once:
        report = loop.run_cycle()
        return 1 if report.aborted or report.failures else 0

    signal.signal(signal.SIGINT, loop.stop)
    signal.signal(signal.SIGTERM, loop.stop)
    loop.run_forever()
    return 0


if __name__ == '__main__':
    raise SystemExit(main(sys.argv[1:]))
