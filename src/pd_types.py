#!/usr/bin/env python3
# src/pd_types.py
"""
Data model for PD member reconciliation.

ClusterSpec is the desired configuration, read-only to the controller.
ClusterStatus is the observed state, owned by the reconciliation pass and
persisted to the TidbCluster status sub-resource in its camelCase shape.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Set

from pd_errors import ConfigurationError

logger = logging.getLogger("pd-controller.types")

FORCE_UPGRADE_ANNOTATION = "tidb.pingcap.com/force-upgrade"
DELETE_SLOTS_ANNOTATION = "pd.tidb.pingcap.com/delete-slots"

DEFAULT_PD_BASE_IMAGE = "pingcap/pd"
DEFAULT_MAX_FAILOVER_COUNT = 3

CONFIG_UPDATE_ROLLING = "RollingUpdate"
CONFIG_UPDATE_IN_PLACE = "InPlace"


def k8s_now() -> str:
    """Current UTC time in the RFC3339 form Kubernetes uses for status times."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_k8s_time(time_str: str) -> Optional[datetime]:
    """Parse an RFC3339 status timestamp, returning None when unset or invalid."""
    if not time_str:
        return None
    try:
        return datetime.strptime(time_str, "%Y-%m-%dT%H:%M:%SZ").replace(
            tzinfo=timezone.utc
        )
    except ValueError:
        logger.warning(f"Could not parse timestamp: {time_str}")
        return None


class MemberPhase(str, Enum):
    NORMAL = "Normal"
    SCALE = "Scale"
    UPGRADE = "Upgrade"


def _uid_set_to_dict(uids: Set[str]) -> Dict[str, Dict]:
    return {uid: {} for uid in sorted(uids)}


@dataclass
class MemberRecord:
    """A PD member as reported by the health endpoint."""

    name: str
    id: str = ""
    client_url: str = ""
    health: bool = False
    last_transition_time: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "id": self.id,
            "clientURL": self.client_url,
            "health": self.health,
            "lastTransitionTime": self.last_transition_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemberRecord":
        return cls(
            name=data.get("name", ""),
            id=str(data.get("id", "")),
            client_url=data.get("clientURL", ""),
            health=bool(data.get("health", False)),
            last_transition_time=data.get("lastTransitionTime", ""),
        )


@dataclass
class UnjoinedMemberRecord:
    """A pod that exists but has not registered as a PD member yet."""

    pod_name: str
    pvc_uid_set: Set[str] = field(default_factory=set)
    created_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "podName": self.pod_name,
            "pvcUIDSet": _uid_set_to_dict(self.pvc_uid_set),
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UnjoinedMemberRecord":
        return cls(
            pod_name=data.get("podName", ""),
            pvc_uid_set=set((data.get("pvcUIDSet") or {}).keys()),
            created_at=data.get("createdAt", ""),
        )


@dataclass
class FailureMemberRecord:
    """A member marked as failed by the failover strategy."""

    pod_name: str
    member_id: str = ""
    pvc_uid_set: Set[str] = field(default_factory=set)
    member_deleted: bool = False
    created_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "podName": self.pod_name,
            "memberID": self.member_id,
            "pvcUIDSet": _uid_set_to_dict(self.pvc_uid_set),
            "memberDeleted": self.member_deleted,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FailureMemberRecord":
        return cls(
            pod_name=data.get("podName", ""),
            member_id=str(data.get("memberID", "")),
            pvc_uid_set=set((data.get("pvcUIDSet") or {}).keys()),
            member_deleted=bool(data.get("memberDeleted", False)),
            created_at=data.get("createdAt", ""),
        )


@dataclass
class PDStatus:
    """Observed state of the PD component."""

    synced: bool = False
    phase: MemberPhase = MemberPhase.NORMAL
    stateful_set: Optional[Dict[str, Any]] = None
    members: Dict[str, MemberRecord] = field(default_factory=dict)
    peer_members: Dict[str, MemberRecord] = field(default_factory=dict)
    leader: Optional[MemberRecord] = None
    # None means "never populated", which the failover gate treats differently
    # from an empty mapping.
    failure_members: Optional[Dict[str, FailureMemberRecord]] = None
    unjoined_members: Dict[str, UnjoinedMemberRecord] = field(default_factory=dict)
    image: str = ""
    volumes: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    vol_replace_in_progress: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "synced": self.synced,
            "phase": self.phase.value,
            "statefulSet": self.stateful_set,
            "members": {k: v.to_dict() for k, v in self.members.items()},
            "peerMembers": {k: v.to_dict() for k, v in self.peer_members.items()},
            "leader": self.leader.to_dict() if self.leader else {},
            "unjoinedMembers": {
                k: v.to_dict() for k, v in self.unjoined_members.items()
            },
            "image": self.image,
            "volumes": self.volumes,
            "volReplaceInProgress": self.vol_replace_in_progress,
        }
        if self.failure_members is not None:
            data["failureMembers"] = {
                k: v.to_dict() for k, v in self.failure_members.items()
            }
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PDStatus":
        data = data or {}
        failure_members = data.get("failureMembers")
        leader = data.get("leader")
        try:
            phase = MemberPhase(data.get("phase", MemberPhase.NORMAL.value))
        except ValueError:
            logger.warning(f"Unknown PD phase {data.get('phase')!r}, using Normal")
            phase = MemberPhase.NORMAL
        return cls(
            synced=bool(data.get("synced", False)),
            phase=phase,
            stateful_set=data.get("statefulSet"),
            members={
                k: MemberRecord.from_dict(v)
                for k, v in (data.get("members") or {}).items()
            },
            peer_members={
                k: MemberRecord.from_dict(v)
                for k, v in (data.get("peerMembers") or {}).items()
            },
            leader=MemberRecord.from_dict(leader) if leader else None,
            failure_members=(
                {k: FailureMemberRecord.from_dict(v) for k, v in failure_members.items()}
                if failure_members is not None
                else None
            ),
            unjoined_members={
                k: UnjoinedMemberRecord.from_dict(v)
                for k, v in (data.get("unjoinedMembers") or {}).items()
            },
            image=data.get("image", ""),
            volumes=data.get("volumes") or {},
            vol_replace_in_progress=bool(data.get("volReplaceInProgress", False)),
        )


@dataclass
class ClusterStatus:
    cluster_id: str = ""
    pd: PDStatus = field(default_factory=PDStatus)

    def to_dict(self) -> Dict[str, Any]:
        return {"clusterID": self.cluster_id, "pd": self.pd.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusterStatus":
        data = data or {}
        return cls(
            cluster_id=str(data.get("clusterID", "")),
            pd=PDStatus.from_dict(data.get("pd") or {}),
        )


@dataclass
class ServiceOverrides:
    """User overrides for the client-facing PD service."""

    type: str = ""
    annotations: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    load_balancer_ip: Optional[str] = None
    cluster_ip: Optional[str] = None
    port_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ServiceOverrides"]:
        if data is None:
            return None
        return cls(
            type=data.get("type", ""),
            annotations=dict(data.get("annotations") or {}),
            labels=dict(data.get("labels") or {}),
            load_balancer_ip=data.get("loadBalancerIP"),
            cluster_ip=data.get("clusterIP"),
            port_name=data.get("portName"),
        )


@dataclass
class PDSpec:
    replicas: int = 3
    base_image: str = DEFAULT_PD_BASE_IMAGE
    image: str = ""
    version: str = ""
    mode: str = ""
    config: Optional[Any] = None
    storage_request: str = ""
    storage_class_name: Optional[str] = None
    service: Optional[ServiceOverrides] = None
    max_failover_count: Optional[int] = DEFAULT_MAX_FAILOVER_COUNT
    statefulset_update_strategy: str = "RollingUpdate"
    config_update_strategy: str = CONFIG_UPDATE_ROLLING
    image_pull_policy: str = "IfNotPresent"
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    readiness_probe: Optional[Dict[str, Any]] = None
    service_account: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PDSpec":
        return cls(
            replicas=int(data.get("replicas", 3)),
            base_image=data.get("baseImage") or DEFAULT_PD_BASE_IMAGE,
            image=data.get("image", ""),
            version=data.get("version", ""),
            mode=data.get("mode", ""),
            config=data.get("config"),
            storage_request=(data.get("requests") or {}).get("storage", ""),
            storage_class_name=data.get("storageClassName"),
            service=ServiceOverrides.from_dict(data.get("service")),
            max_failover_count=data.get("maxFailoverCount", DEFAULT_MAX_FAILOVER_COUNT),
            statefulset_update_strategy=data.get(
                "statefulSetUpdateStrategy", "RollingUpdate"
            ),
            config_update_strategy=data.get("configUpdateStrategy", CONFIG_UPDATE_ROLLING),
            image_pull_policy=data.get("imagePullPolicy", "IfNotPresent"),
            labels=dict(data.get("labels") or {}),
            annotations=dict(data.get("annotations") or {}),
            readiness_probe=data.get("readinessProbe"),
            service_account=data.get("serviceAccount", ""),
        )


@dataclass
class ClusterSpec:
    """Desired configuration of one TidbCluster, as far as PD is concerned."""

    name: str
    namespace: str
    uid: str = ""
    annotations: Dict[str, str] = field(default_factory=dict)
    paused: bool = False
    version: str = ""
    cluster_domain: str = ""
    across_k8s: bool = False
    timezone: str = "UTC"
    service_account: str = ""
    pd: Optional[PDSpec] = None
    pdms_enabled: bool = False
    suspend_statefulset: bool = False

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "ClusterSpec":
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        pd = spec.get("pd")
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", "default"),
            uid=metadata.get("uid", ""),
            annotations=dict(metadata.get("annotations") or {}),
            paused=bool(spec.get("paused", False)),
            version=spec.get("version", ""),
            cluster_domain=spec.get("clusterDomain", ""),
            across_k8s=bool(spec.get("acrossK8s", False)),
            timezone=spec.get("timezone", "UTC"),
            service_account=spec.get("serviceAccount", ""),
            pd=PDSpec.from_dict(pd) if pd is not None else None,
            pdms_enabled=spec.get("pdms") is not None,
            suspend_statefulset=bool(
                (spec.get("suspendAction") or {}).get("suspendStatefulSet", False)
            ),
        )

    def pd_version(self) -> str:
        if self.pd and self.pd.version:
            return self.pd.version
        return self.version

    def pd_image(self) -> str:
        if self.pd and self.pd.image:
            return self.pd.image
        base = self.pd.base_image if self.pd else DEFAULT_PD_BASE_IMAGE
        version = self.pd_version()
        return f"{base}:{version}" if version else base

    def force_upgrade_requested(self) -> bool:
        return self.annotations.get(FORCE_UPGRADE_ANNOTATION, "").lower() == "true"

    def delete_slots(self) -> Set[int]:
        raw = self.annotations.get(DELETE_SLOTS_ANNOTATION, "")
        if not raw:
            return set()
        try:
            slots = json.loads(raw)
        except ValueError as e:
            raise ConfigurationError(
                f"invalid {DELETE_SLOTS_ANNOTATION} annotation {raw!r}: {e}"
            )
        if not isinstance(slots, list) or not all(isinstance(s, int) for s in slots):
            raise ConfigurationError(
                f"invalid {DELETE_SLOTS_ANNOTATION} annotation {raw!r}: "
                "expected a list of integers"
            )
        return set(slots)


def ordinals_from_replicas(replicas: int, delete_slots: Set[int]) -> Set[int]:
    """The first `replicas` ordinals counting from 0, skipping deleted slots."""
    ordinals: Set[int] = set()
    ordinal = 0
    while len(ordinals) < replicas:
        if ordinal not in delete_slots:
            ordinals.add(ordinal)
        ordinal += 1
    return ordinals


@dataclass
class TidbCluster:
    """A cluster under reconciliation: desired spec plus mutable status."""

    spec: ClusterSpec
    status: ClusterStatus = field(default_factory=ClusterStatus)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "TidbCluster":
        return cls(
            spec=ClusterSpec.from_dict(obj),
            status=ClusterStatus.from_dict(obj.get("status") or {}),
        )

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def namespace(self) -> str:
        return self.spec.namespace

    def pd_desired_replicas(self) -> int:
        failures = self.status.pd.failure_members or {}
        return self.spec.pd.replicas + len(failures)

    def pd_desired_ordinals(self, exclude_failover: bool) -> Set[int]:
        replicas = self.spec.pd.replicas
        if not exclude_failover:
            replicas = self.pd_desired_replicas()
        return ordinals_from_replicas(replicas, self.spec.delete_slots())

    def pd_actual_replicas(self) -> int:
        snapshot = self.status.pd.stateful_set or {}
        return int(snapshot.get("replicas", 0))

    def pd_all_pods_started(self) -> bool:
        return self.pd_desired_replicas() == self.pd_actual_replicas()

    def pd_all_members_ready(self) -> bool:
        members = self.status.pd.members
        if len(members) != self.pd_desired_replicas():
            return False
        return all(member.health for member in members.values())

    def pd_auto_failovering(self) -> bool:
        failures = self.status.pd.failure_members or {}
        return any(not member.member_deleted for member in failures.values())
