#!/usr/bin/env python3
# src/pd_controller.py
"""
PD Controller - reconciles the PD tier of TidbCluster resources

This process lists TidbCluster objects, runs the PD member manager for each of
them in turn and persists the resulting status. Passes are rescheduled per
cluster: a requeue runs again shortly, an error backs off exponentially and a
clean pass waits for the next sync interval.
"""

import logging
import os
import random
import signal
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from prometheus_client import Counter, Gauge, Info, start_http_server

from pd_member_manager import Outcome, OutcomeKind, PDMemberManager
from pd_status import StatusSynchronizer
from pd_stores import ObjectStores
from pd_strategies import (
    DeadlineFailover,
    PartitionUpgrader,
    PVCVolumeStatusSyncer,
    SpecSuspender,
    StepScaler,
)
from pd_types import MemberPhase, TidbCluster

# -----------------------------
# Environment variables
# -----------------------------
NAMESPACE = os.environ.get("NAMESPACE", "")  # empty watches all namespaces
CRD_GROUP = os.environ.get("CRD_GROUP", "pingcap.com")
CRD_VERSION = os.environ.get("CRD_VERSION", "v1alpha1")
CRD_PLURAL = os.environ.get("CRD_PLURAL", "tidbclusters")
SYNC_INTERVAL = int(os.environ.get("SYNC_INTERVAL", 30))
REQUEUE_INTERVAL = int(os.environ.get("REQUEUE_INTERVAL", 5))
MAX_BACKOFF = int(os.environ.get("MAX_BACKOFF", 300))
METRICS_PORT = int(os.environ.get("METRICS_PORT", 8000))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

VERSION = "1.0.0"

# -----------------------------
# Logging Setup
# -----------------------------
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s",
)
logger = logging.getLogger("pd-controller")

# -----------------------------
# Prometheus Metrics
# -----------------------------
reconcile_total = Counter(
    "pd_controller_reconcile_total",
    "Total number of PD reconciliation passes",
    ["result"],
)
members_gauge = Gauge(
    "pd_controller_members",
    "Number of PD members of the cluster by health",
    ["cluster", "namespace", "health"],
)
synced_gauge = Gauge(
    "pd_controller_synced",
    "Whether the last PD status refresh succeeded",
    ["cluster", "namespace"],
)
phase_gauge = Gauge(
    "pd_controller_phase",
    "Current PD phase of the cluster (1 for the active phase)",
    ["cluster", "namespace", "phase"],
)
info_metric = Info("pd_controller", "Information about the PD controller instance")

info_metric.info(
    {
        "version": VERSION,
        "namespace": NAMESPACE or "all",
        "crd": f"{CRD_PLURAL}.{CRD_GROUP}/{CRD_VERSION}",
    }
)


# -----------------------------
# Utility Functions
# -----------------------------


def calculate_jittered_sleep(base_interval: int, max_jitter_percent: float = 0.2) -> float:
    """Sleep interval with random jitter so clusters do not sync in lockstep."""
    jitter_range = base_interval * max_jitter_percent
    jitter = random.uniform(-jitter_range, jitter_range)
    return max(1.0, base_interval + jitter)


def calculate_exponential_backoff(
    attempt: int, base_delay: float = REQUEUE_INTERVAL, max_delay: float = MAX_BACKOFF
) -> float:
    """Backoff delay for the given retry attempt (0-based), capped at max_delay.

    Args:
        attempt: Retry attempt number (0-based)
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds

    Returns:
        Backoff delay with jitter, never above max_delay
    """
    delay = min(base_delay * (2 ** attempt), max_delay)
    jitter = random.uniform(0.1, 0.3) * delay
    return min(delay + jitter, max_delay)


def _merge_diff(old: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, Any]:
    patch: Dict[str, Any] = {}
    for key, value in new.items():
        old_value = old.get(key)
        if isinstance(value, dict) and isinstance(old_value, dict):
            nested = _merge_diff(old_value, value)
            if nested:
                patch[key] = nested
        elif key not in old or value != old_value:
            patch[key] = value
    for key in old:
        if key not in new:
            patch[key] = None
    return patch


def build_status_patch(old: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, Any]:
    """JSON merge patch turning status `old` into `new`, or {} if unchanged.

    Map entries that disappeared (members, unjoined members, failure members)
    are sent as null so the API server removes them.
    """
    diff = _merge_diff(old, new)
    return {"status": diff} if diff else {}


def load_kubernetes_config():
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes configuration")


def build_manager(core_api: client.CoreV1Api, apps_api: client.AppsV1Api) -> PDMemberManager:
    """Wire the member manager with the default strategies."""
    stores = ObjectStores.from_clients(core_api, apps_api)
    status_syncer = StatusSynchronizer(stores, PVCVolumeStatusSyncer(stores.pvcs))
    return PDMemberManager(
        stores,
        scaler=StepScaler(),
        upgrader=PartitionUpgrader(stores.pods),
        failover=DeadlineFailover(),
        suspender=SpecSuspender(),
        status_syncer=status_syncer,
    )


def update_metrics(tc: TidbCluster):
    """Export the PD status of one cluster."""
    labels = {"cluster": tc.name, "namespace": tc.namespace}
    members = tc.status.pd.members
    healthy = sum(1 for member in members.values() if member.health)
    members_gauge.labels(health="healthy", **labels).set(healthy)
    members_gauge.labels(health="unhealthy", **labels).set(len(members) - healthy)
    synced_gauge.labels(**labels).set(1 if tc.status.pd.synced else 0)
    for phase in MemberPhase:
        phase_gauge.labels(phase=phase.value, **labels).set(
            1 if tc.status.pd.phase == phase else 0
        )


# -----------------------------
# Controller
# -----------------------------


@dataclass
class ClusterSchedule:
    next_run: float = 0.0
    failures: int = 0


class PDController:
    """Sequential reconcile loop over all TidbCluster objects."""

    def __init__(self, custom_objects_api: client.CustomObjectsApi, manager: PDMemberManager):
        self.api = custom_objects_api
        self.manager = manager
        self.schedules: Dict[Tuple[str, str], ClusterSchedule] = {}

    def list_clusters(self) -> List[Dict[str, Any]]:
        if NAMESPACE:
            result = self.api.list_namespaced_custom_object(
                group=CRD_GROUP, version=CRD_VERSION, namespace=NAMESPACE, plural=CRD_PLURAL
            )
        else:
            result = self.api.list_cluster_custom_object(
                group=CRD_GROUP, version=CRD_VERSION, plural=CRD_PLURAL
            )
        return result.get("items", [])

    def persist_status(self, tc: TidbCluster, before: Dict[str, Any]):
        patch = build_status_patch(before, tc.status.to_dict())
        if not patch:
            logger.debug(f"Status of {tc.namespace}/{tc.name} unchanged, skip patch")
            return
        self.api.patch_namespaced_custom_object_status(
            group=CRD_GROUP,
            version=CRD_VERSION,
            namespace=tc.namespace,
            plural=CRD_PLURAL,
            name=tc.name,
            body=patch,
        )
        logger.debug(f"Patched status of {tc.namespace}/{tc.name}")

    def reconcile(self, obj: Dict[str, Any]) -> Outcome:
        """Run one pass for a TidbCluster object and persist its status."""
        tc = TidbCluster.from_dict(obj)
        before = tc.status.to_dict()
        outcome = self.manager.sync(tc)

        try:
            self.persist_status(tc, before)
        except ApiException as e:
            logger.error(f"Failed to update status of {tc.namespace}/{tc.name}: {e}")
            if outcome.kind is not OutcomeKind.FAIL:
                outcome = Outcome.fail(e)

        update_metrics(tc)
        if outcome.kind is OutcomeKind.FAIL:
            reconcile_total.labels(result="error").inc()
            logger.error(f"PD sync of {tc.namespace}/{tc.name} failed: {outcome.message}")
        elif outcome.kind is OutcomeKind.REQUEUE:
            reconcile_total.labels(result="requeue").inc()
            logger.info(f"PD sync of {tc.namespace}/{tc.name} requeued: {outcome.message}")
        else:
            reconcile_total.labels(result="success").inc()
        return outcome

    def schedule(self, key: Tuple[str, str], outcome: Outcome, now: float) -> float:
        """Record when `key` is due next and return the delay chosen."""
        entry = self.schedules.setdefault(key, ClusterSchedule())
        if outcome.kind is OutcomeKind.FAIL:
            delay = calculate_exponential_backoff(entry.failures)
            entry.failures += 1
        elif outcome.kind is OutcomeKind.REQUEUE:
            delay = float(REQUEUE_INTERVAL)
            entry.failures = 0
        else:
            delay = calculate_jittered_sleep(SYNC_INTERVAL)
            entry.failures = 0
        entry.next_run = now + delay
        return delay

    def run_once(self, now: Optional[float] = None) -> float:
        """Reconcile every due cluster once; return seconds until the next one is due."""
        now = time.monotonic() if now is None else now
        seen = set()
        for obj in self.list_clusters():
            metadata = obj.get("metadata") or {}
            key = (metadata.get("namespace", "default"), metadata.get("name", ""))
            seen.add(key)
            entry = self.schedules.get(key)
            if entry is not None and entry.next_run > now:
                continue
            try:
                outcome = self.reconcile(obj)
            except Exception as e:
                logger.error(f"Unexpected error reconciling {key[0]}/{key[1]}: {e}")
                reconcile_total.labels(result="error").inc()
                outcome = Outcome.fail(e)
            self.schedule(key, outcome, now)

        for key in list(self.schedules):
            if key not in seen:
                logger.info(f"TidbCluster {key[0]}/{key[1]} is gone, forgetting it")
                del self.schedules[key]

        if not self.schedules:
            return float(SYNC_INTERVAL)
        next_due = min(entry.next_run for entry in self.schedules.values())
        return max(1.0, min(next_due - now, float(SYNC_INTERVAL)))


# -----------------------------
# Main Loop
# -----------------------------


def signal_handler(signum, frame):
    """Handle termination signals gracefully."""
    logger.info(f"Received signal {signum}, initiating graceful shutdown")
    # The main loop will handle cleanup via KeyboardInterrupt
    raise KeyboardInterrupt


def main():
    """Main application loop."""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info(
        f"Starting PD controller for {CRD_PLURAL}.{CRD_GROUP} in namespace "
        f"{NAMESPACE or '<all>'}"
    )
    start_http_server(METRICS_PORT)
    logger.info(f"Metrics server started on port {METRICS_PORT}")

    load_kubernetes_config()
    controller = PDController(
        client.CustomObjectsApi(),
        build_manager(client.CoreV1Api(), client.AppsV1Api()),
    )

    try:
        while True:
            try:
                delay = controller.run_once()
                logger.debug(f"Sleeping for {delay:.2f}s")
                time.sleep(delay)
            except KeyboardInterrupt:
                logger.info("Received interrupt signal, shutting down gracefully")
                break
            except Exception as e:
                logger.error(f"Error in main loop iteration: {e}")
                time.sleep(min(SYNC_INTERVAL * 2, MAX_BACKOFF))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    finally:
        logger.info("PD controller shutdown complete")


if __name__ == "__main__":
    main()
