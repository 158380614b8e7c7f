#!/usr/bin/env python3
# src/pd_status.py
"""
Status synchronizer for the PD component.

Each pass rebuilds the observed PD status from two sources:
- the live StatefulSet (snapshot, phase, image)
- the PD HTTP API (cluster id, member health, leader)

Members and peer members are rebuilt into fresh maps every pass. The previous
maps are only read, to carry a member's lastTransitionTime forward while its
health is unchanged.
"""

import logging
from dataclasses import replace
from typing import Callable, Dict, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from pd_builder import container_image
from pd_client import LeaderInfo, PDClient, get_pd_client
from pd_errors import NoReadyBackendsError, PDClientError, StatusSyncError
from pd_membership import collect_unjoined_members
from pd_naming import (
    CONTROLLER_REVISION_HASH_LABEL,
    PD_COMPONENT,
    client_url_belongs_to_cluster,
    label_selector,
    pd_labels,
    pd_member_name,
)
from pd_stores import ObjectStores, PodLister, to_dict
from pd_strategies import VolumeStatusSyncer
from pd_types import MemberPhase, MemberRecord, TidbCluster, k8s_now

logger = logging.getLogger("pd-controller.status")


def statefulset_is_upgrading(
    sts: client.V1StatefulSet, tc: TidbCluster, pod_lister: PodLister
) -> bool:
    """Whether a rollout of `sts` is still in progress.

    Looks at the StatefulSet's own revisions first, then at the revision
    label of every selected pod. A pod without the label is not counted as
    upgrading.
    """
    status = sts.status
    if status is not None:
        if (status.current_revision or "") != (status.update_revision or ""):
            return True
        if (sts.metadata.generation or 0) > (status.observed_generation or 0) and (
            sts.spec.replicas == status.replicas
        ):
            return True

    update_revision = (tc.status.pd.stateful_set or {}).get("updateRevision", "")
    selector = label_selector(pd_labels(tc.name))
    for pod in pod_lister.list(tc.namespace, selector):
        revision = (pod.metadata.labels or {}).get(CONTROLLER_REVISION_HASH_LABEL)
        if revision is None:
            return False
        if revision != update_revision:
            return True
    return False


class StatusSynchronizer:
    """Refreshes tc.status.pd from the workload and the PD API."""

    def __init__(
        self,
        stores: ObjectStores,
        volume_syncer: VolumeStatusSyncer,
        client_factory: Callable[[TidbCluster], PDClient] = get_pd_client,
        now: Callable[[], str] = k8s_now,
    ):
        self.stores = stores
        self.volume_syncer = volume_syncer
        self.client_factory = client_factory
        self.now = now

    def sync(self, tc: TidbCluster, sts: Optional[client.V1StatefulSet]) -> None:
        if sts is None:
            return

        pd_status = tc.status.pd
        pd_status.stateful_set = to_dict(sts.status) if sts.status is not None else {}
        upgrading = statefulset_is_upgrading(sts, tc, self.stores.pods)

        # Scaling takes precedence over upgrading.
        if tc.pd_desired_replicas() != sts.spec.replicas:
            pd_status.phase = MemberPhase.SCALE
        elif upgrading:
            pd_status.phase = MemberPhase.UPGRADE
        else:
            pd_status.phase = MemberPhase.NORMAL

        pd_client = self.client_factory(tc)
        try:
            healths = pd_client.get_health()
        except PDClientError as e:
            pd_status.synced = False
            self._diagnose_health_error(tc, e)
            raise
        try:
            cluster = pd_client.get_cluster()
            leader = pd_client.get_pd_leader()
        except PDClientError:
            pd_status.synced = False
            raise

        tc.status.cluster_id = str(cluster.id)
        stamp = self.now()
        members: Dict[str, MemberRecord] = {}
        peer_members: Dict[str, MemberRecord] = {}
        for health in healths:
            if not health.name:
                logger.warning(
                    f"PD member {health.member_id} of {tc.namespace}/{tc.name} "
                    "reported no name, skipping it"
                )
                continue

            client_url = health.client_urls[0] if health.client_urls else ""
            record = MemberRecord(
                name=health.name,
                id=str(health.member_id),
                client_url=client_url,
                health=health.health,
                last_transition_time=stamp,
            )
            if client_url_belongs_to_cluster(
                client_url, tc.name, tc.namespace, tc.spec.cluster_domain
            ):
                previous, target = pd_status.members, members
            else:
                previous, target = pd_status.peer_members, peer_members

            old = previous.get(health.name)
            if old is not None and old.health == record.health:
                record.last_transition_time = old.last_transition_time
            target[health.name] = record
            self._maybe_set_leader(tc, record, leader)

        pd_status.synced = True
        pd_status.members = members
        pd_status.peer_members = peer_members
        pd_status.image = container_image(sts, PD_COMPONENT)
        logger.debug(
            f"Synced PD status of {tc.namespace}/{tc.name}: phase={pd_status.phase.value}, "
            f"members={len(members)}, peers={len(peer_members)}"
        )

        collect_unjoined_members(
            tc, sts, members, self.stores.pods, self.stores.pvcs, now=self.now
        )

        try:
            self.volume_syncer.sync_volume_status(tc, PD_COMPONENT)
        except (ApiException, PDClientError) as e:
            raise StatusSyncError(f"failed to sync volume status for pd: {e}") from e

    def _maybe_set_leader(
        self, tc: TidbCluster, record: MemberRecord, leader: LeaderInfo
    ) -> None:
        if record.name == leader.name:
            tc.status.pd.leader = replace(record)

    def _diagnose_health_error(self, tc: TidbCluster, err: PDClientError) -> None:
        """Raise a more specific error when the PD service has no backends."""
        name = pd_member_name(tc.name)
        try:
            endpoints = self.stores.endpoints.get(tc.namespace, name)
        except ApiException as ep_err:
            raise StatusSyncError(
                f"failed to get endpoints {tc.namespace}/{name} for cluster "
                f"{tc.namespace}/{tc.name}, err: {err}, epErr: {ep_err}"
            ) from err
        if endpoints is None:
            raise StatusSyncError(
                f"failed to get endpoints {tc.namespace}/{name} for cluster "
                f"{tc.namespace}/{tc.name}, err: {err}, epErr: not found"
            ) from err
        if not endpoints.subsets:
            raise NoReadyBackendsError(
                f"{err}, service {tc.namespace}/{name} has no endpoints"
            ) from err
