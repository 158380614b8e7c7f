#!/usr/bin/env python3
# src/pd_failover.py
"""
Failover gate: decides whether failover recovery is safe to run.
"""

import logging

from kubernetes.client.rest import ApiException

from pd_naming import pd_pod_name
from pd_stores import PodLister, is_pod_ready
from pd_types import TidbCluster

logger = logging.getLogger("pd-controller.failover")


def should_recover(tc: TidbCluster, pod_lister: PodLister) -> bool:
    """True only when every desired, non-failover PD pod is ready and healthy.

    Failover pods are ignored: they may never start (for example for lack of
    resources) and recovery is going to delete them anyway. Partial health is
    never enough.
    """
    if tc.status.pd.failure_members is None:
        return False

    members = tc.status.pd.members
    for ordinal in sorted(tc.pd_desired_ordinals(exclude_failover=True)):
        name = pd_pod_name(tc.name, ordinal)
        try:
            pod = pod_lister.get(tc.namespace, name)
        except ApiException as e:
            logger.error(f"failed to get pod {tc.namespace}/{name}: {e}")
            return False
        if pod is None:
            logger.error(f"pod {tc.namespace}/{name} does not exist")
            return False
        if not is_pod_ready(pod):
            logger.debug(f"pod {tc.namespace}/{name} is not ready, skip recovery")
            return False

        member = next(
            (m for m_name, m in members.items() if m_name.split(".")[0] == name),
            None,
        )
        if member is None or not member.health:
            logger.debug(f"PD member for pod {tc.namespace}/{name} is not healthy")
            return False
    return True
