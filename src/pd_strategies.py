#!/usr/bin/env python3
# src/pd_strategies.py
"""
Strategy collaborators of the PD member manager.

The manager only calls the single documented operation of each interface and
never looks inside. Default implementations are provided so the controller
runs standalone:
- SpecSuspender: honours spec.suspendAction.suspendStatefulSet
- StepScaler: moves replicas one step per pass toward the desired count
- PartitionUpgrader: ordered rollout from the highest ordinal down
- DeadlineFailover: marks members unhealthy for too long as failed
- PVCVolumeStatusSyncer: summarises the component's volume claims
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from kubernetes import client

from pd_errors import RequeueError
from pd_naming import (
    CONTROLLER_REVISION_HASH_LABEL,
    PD_COMPONENT,
    label_selector,
    pd_canonical_member_name,
    pd_labels,
    pd_pod_name,
)
from pd_stores import (
    PodLister,
    PVCLister,
    get_upgrade_partition,
    set_upgrade_partition,
    template_equal,
)
from pd_types import (
    FailureMemberRecord,
    MemberPhase,
    TidbCluster,
    k8s_now,
    ordinals_from_replicas,
    parse_k8s_time,
)

logger = logging.getLogger("pd-controller.strategies")

PD_FAILOVER_PERIOD = int(os.environ.get("PD_FAILOVER_PERIOD", "300"))


class Scaler:
    def scale(
        self, tc: TidbCluster, old_set: client.V1StatefulSet, new_set: client.V1StatefulSet
    ) -> None:
        """Adjust new_set's replicas toward the desired count."""
        raise NotImplementedError


class Upgrader:
    def upgrade(
        self, tc: TidbCluster, old_set: client.V1StatefulSet, new_set: client.V1StatefulSet
    ) -> None:
        """Drive a controlled rollout by adjusting new_set's update strategy."""
        raise NotImplementedError


class Failover:
    def failover(self, tc: TidbCluster) -> None:
        """Record failed members so replacements can be created."""
        raise NotImplementedError

    def recover(self, tc: TidbCluster) -> None:
        """Forget failure records once the desired members are healthy again."""
        raise NotImplementedError


class Suspender:
    def suspend_component(self, tc: TidbCluster, component: str) -> bool:
        """Whether reconciliation of `component` is suspended."""
        raise NotImplementedError


class VolumeStatusSyncer:
    def sync_volume_status(self, tc: TidbCluster, component: str) -> None:
        raise NotImplementedError


class SpecSuspender(Suspender):
    def suspend_component(self, tc: TidbCluster, component: str) -> bool:
        if tc.spec.suspend_statefulset:
            logger.info(
                f"Component {component} of {tc.namespace}/{tc.name} is suspended "
                "by spec.suspendAction"
            )
            return True
        return False


class StepScaler(Scaler):
    """Scales one replica per pass so each new member joins before the next."""

    def scale(self, tc, old_set, new_set) -> None:
        current = old_set.spec.replicas or 0
        desired = new_set.spec.replicas or 0
        if desired == current:
            return

        step = 1 if desired > current else -1
        new_set.spec.replicas = current + step
        tc.status.pd.phase = MemberPhase.SCALE
        logger.info(
            f"Scaling PD of {tc.namespace}/{tc.name} from {current} to "
            f"{new_set.spec.replicas} (desired {desired})"
        )


class PartitionUpgrader(Upgrader):
    """Lowers the rolling-update partition one pod at a time.

    A pod is only released once every pod above it runs the update revision
    and reports a healthy member.
    """

    def __init__(self, pod_lister: PodLister):
        self.pod_lister = pod_lister

    def upgrade(self, tc, old_set, new_set) -> None:
        ns = tc.namespace
        tc.status.pd.phase = MemberPhase.UPGRADE
        if not template_equal(new_set, old_set):
            return

        snapshot: Dict[str, Any] = tc.status.pd.stateful_set or {}
        update_revision = snapshot.get("updateRevision", "")
        if update_revision == snapshot.get("currentRevision", ""):
            return

        old_partition = get_upgrade_partition(old_set)
        if old_partition is None:
            new_set.spec.update_strategy = old_set.spec.update_strategy
            logger.warning(
                f"PD statefulset {ns}/{old_set.metadata.name} update strategy was "
                "modified manually, skip the ordered rollout"
            )
            return

        set_upgrade_partition(new_set, old_partition)
        ordinals = ordinals_from_replicas(
            old_set.spec.replicas or 0, tc.spec.delete_slots()
        )
        for ordinal in sorted(ordinals, reverse=True):
            pod_name = pd_pod_name(tc.name, ordinal)
            pod = self.pod_lister.get(ns, pod_name)
            if pod is None:
                raise RequeueError(f"{ns}/{tc.name}'s pd pod {pod_name} does not exist")
            revision = (pod.metadata.labels or {}).get(CONTROLLER_REVISION_HASH_LABEL)
            if revision is None:
                raise RequeueError(
                    f"{ns}/{tc.name}'s pd pod {pod_name} has no label "
                    f"{CONTROLLER_REVISION_HASH_LABEL}"
                )
            if revision == update_revision:
                member_name = pd_canonical_member_name(
                    tc.name, ordinal, ns, tc.spec.cluster_domain, tc.spec.across_k8s
                )
                member = tc.status.pd.members.get(member_name)
                if member is None or not member.health:
                    raise RequeueError(
                        f"{ns}/{tc.name}'s pd upgraded pod {pod_name} is not ready"
                    )
                continue

            set_upgrade_partition(new_set, ordinal)
            logger.info(f"Upgrading PD pod {ns}/{pod_name}")
            return


class DeadlineFailover(Failover):
    """Marks a member failed once it has been unhealthy for PD_FAILOVER_PERIOD."""

    def __init__(self, period_seconds: int = PD_FAILOVER_PERIOD):
        self.period = timedelta(seconds=period_seconds)

    def failover(self, tc: TidbCluster) -> None:
        ns = tc.namespace
        max_count = tc.spec.pd.max_failover_count or 0
        failures = dict(tc.status.pd.failure_members or {})
        if len(failures) >= max_count:
            logger.warning(
                f"{ns}/{tc.name} PD failure members reached the limit {max_count}, "
                "skip failover"
            )
            return

        now = datetime.now(timezone.utc)
        for name, member in sorted(tc.status.pd.members.items()):
            if member.health:
                continue
            pod_name = name.split(".")[0]
            if pod_name in failures:
                continue
            since = parse_k8s_time(member.last_transition_time)
            if since is None or now - since < self.period:
                continue

            failures[pod_name] = FailureMemberRecord(
                pod_name=pod_name,
                member_id=member.id,
                created_at=k8s_now(),
            )
            tc.status.pd.failure_members = failures
            logger.warning(
                f"PD member {name} of {ns}/{tc.name} unhealthy since "
                f"{member.last_transition_time}, marked as failure member"
            )
            return

    def recover(self, tc: TidbCluster) -> None:
        if tc.status.pd.failure_members:
            logger.info(
                f"All PD members of {tc.namespace}/{tc.name} are healthy, clearing "
                f"failure members {sorted(tc.status.pd.failure_members)}"
            )
        tc.status.pd.failure_members = None


class PVCVolumeStatusSyncer(VolumeStatusSyncer):
    def __init__(self, pvc_lister: PVCLister):
        self.pvc_lister = pvc_lister

    def sync_volume_status(self, tc: TidbCluster, component: str = PD_COMPONENT) -> None:
        pvcs = self.pvc_lister.list(tc.namespace, label_selector(pd_labels(tc.name)))
        bound = [p for p in pvcs if p.status is not None and p.status.phase == "Bound"]
        summary: Dict[str, Any] = {
            "name": component,
            "currentCount": len(pvcs),
            "boundCount": len(bound),
        }
        if bound:
            capacity = bound[0].status.capacity or {}
            summary["currentCapacity"] = capacity.get("storage", "")
            summary["currentStorageClass"] = bound[0].spec.storage_class_name or ""
        tc.status.pd.volumes = {component: summary}
