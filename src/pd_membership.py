#!/usr/bin/env python3
# src/pd_membership.py
"""
Detects PD pods that exist in the workload but have not joined the PD cluster.
"""

import logging
from typing import Callable, Dict

from kubernetes import client
from kubernetes.client.rest import ApiException

from pd_errors import ConfigurationError
from pd_naming import label_selector, ordinal_from_pod_name, pd_canonical_member_name
from pd_stores import PodLister, PVCLister
from pd_types import MemberRecord, TidbCluster, UnjoinedMemberRecord, k8s_now

logger = logging.getLogger("pd-controller.membership")


def collect_unjoined_members(
    tc: TidbCluster,
    sts: client.V1StatefulSet,
    members: Dict[str, MemberRecord],
    pod_lister: PodLister,
    pvc_lister: PVCLister,
    now: Callable[[], str] = k8s_now,
) -> None:
    """Replace tc.status.pd.unjoined_members with pods missing from `members`.

    A pod has joined when some member name equals its canonical member name,
    ignoring case. Unjoined pods are recorded with the UIDs of the claims
    currently bound to them.
    """
    namespace = tc.namespace
    selector = label_selector(sts.spec.selector.match_labels or {})
    try:
        pods = pod_lister.list(namespace, selector)
    except ApiException as e:
        logger.error(
            f"Failed to list pods for cluster {namespace}/{tc.name}, "
            f"selector {selector}: {e}"
        )
        raise

    joined_names = {name.lower() for name in members}
    unjoined: Dict[str, UnjoinedMemberRecord] = {}
    for pod in pods:
        pod_name = pod.metadata.name
        ordinal = ordinal_from_pod_name(pod_name)
        canonical = pd_canonical_member_name(
            tc.name,
            ordinal,
            namespace,
            tc.spec.cluster_domain,
            tc.spec.across_k8s,
        )
        if canonical.lower() in joined_names:
            continue

        try:
            pvcs = pvc_lister.resolve_from_pod(pod)
        except ConfigurationError as e:
            raise ConfigurationError(
                f"collect_unjoined_members: failed to get pvcs for pod "
                f"{namespace}/{pod_name}, error: {e}"
            ) from e
        unjoined[pod_name] = UnjoinedMemberRecord(
            pod_name=pod_name,
            pvc_uid_set={pvc.metadata.uid for pvc in pvcs},
            created_at=now(),
        )
        logger.debug(f"PD pod {namespace}/{pod_name} has not joined the cluster yet")

    tc.status.pd.unjoined_members = unjoined
