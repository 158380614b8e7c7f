#!/usr/bin/env python3
# tests/fixtures.py
"""
Shared builders for TidbCluster objects and Kubernetes models used in tests.
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from kubernetes import client

from pd_builder import PDObjectBuilder
from pd_client import MemberHealth
from pd_stores import set_last_applied_config_annotation
from pd_types import MemberRecord, TidbCluster

NAMESPACE = "tidb"
CLUSTER = "basic"


def make_cluster(
    name=CLUSTER,
    namespace=NAMESPACE,
    replicas=3,
    version="v7.5.0",
    annotations=None,
    spec_extra=None,
    pd_extra=None,
    status=None,
):
    pd = {"replicas": replicas, "version": version, "requests": {"storage": "10Gi"}}
    pd.update(pd_extra or {})
    spec = {"pd": pd}
    spec.update(spec_extra or {})
    return TidbCluster.from_dict(
        {
            "metadata": {
                "name": name,
                "namespace": namespace,
                "uid": "3f1c2b7e-uid",
                "annotations": annotations or {},
            },
            "spec": spec,
            "status": status or {},
        }
    )


def live_statefulset(
    tc,
    current_revision="rev-1",
    update_revision="rev-1",
    status_replicas=None,
    cm=None,
):
    """StatefulSet as the API server would return it for `tc`'s current spec."""
    sts = PDObjectBuilder().statefulset(tc, cm)
    set_last_applied_config_annotation(sts)
    sts.metadata.resource_version = "1042"
    sts.metadata.generation = 1
    replicas = sts.spec.replicas if status_replicas is None else status_replicas
    sts.status = client.V1StatefulSetStatus(
        replicas=replicas,
        ready_replicas=replicas,
        current_revision=current_revision,
        update_revision=update_revision,
        observed_generation=1,
    )
    return sts


def make_pod(name, namespace=NAMESPACE, ready=True, revision="rev-1", claims=None):
    labels = {
        "app.kubernetes.io/instance": CLUSTER,
        "app.kubernetes.io/component": "pd",
    }
    if revision is not None:
        labels["controller-revision-hash"] = revision
    if claims is None:
        claims = [f"pd-{name}"]
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels),
        spec=client.V1PodSpec(
            containers=[client.V1Container(name="pd")],
            volumes=[
                client.V1Volume(
                    name="pd",
                    persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                        claim_name=claim
                    ),
                )
                for claim in claims
            ],
        ),
        status=client.V1PodStatus(
            conditions=[
                client.V1PodCondition(type="Ready", status="True" if ready else "False")
            ]
        ),
    )


def make_pvc(name, uid, namespace=NAMESPACE, phase="Bound", capacity="10Gi"):
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, uid=uid),
        spec=client.V1PersistentVolumeClaimSpec(storage_class_name="local-storage"),
        status=client.V1PersistentVolumeClaimStatus(
            phase=phase, capacity={"storage": capacity}
        ),
    )


def member_url(ordinal, cluster=CLUSTER, namespace=NAMESPACE, domain=""):
    suffix = f".{domain}" if domain else ""
    return f"http://{cluster}-pd-{ordinal}.{cluster}-pd-peer.{namespace}.svc{suffix}:2379"


def health(ordinal, healthy=True, cluster=CLUSTER, member_id=None):
    return MemberHealth(
        name=f"{cluster}-pd-{ordinal}",
        member_id=member_id if member_id is not None else 1000 + ordinal,
        client_urls=[member_url(ordinal, cluster=cluster)],
        health=healthy,
    )


def member(ordinal, healthy=True, since="2026-01-01T00:00:00Z", cluster=CLUSTER):
    return MemberRecord(
        name=f"{cluster}-pd-{ordinal}",
        id=str(1000 + ordinal),
        client_url=member_url(ordinal, cluster=cluster),
        health=healthy,
        last_transition_time=since,
    )
