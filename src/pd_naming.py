#!/usr/bin/env python3
# src/pd_naming.py
"""
Object names, labels and member naming rules for the PD component.

The membership pattern decides whether a live PD member belongs to this
TidbCluster or is a peer visible through shared discovery, so it must agree
exactly with the per-ordinal DNS names the peer service publishes.
"""

import re
from functools import lru_cache
from typing import Dict, Pattern

from pd_errors import ConfigurationError

PD_COMPONENT = "pd"
PD_CLIENT_PORT = 2379
PD_PEER_PORT = 2380

# Label keys
LABEL_NAME = "app.kubernetes.io/name"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_INSTANCE = "app.kubernetes.io/instance"
LABEL_COMPONENT = "app.kubernetes.io/component"
LABEL_USED_BY = "app.kubernetes.io/used-by"
CONTROLLER_REVISION_HASH_LABEL = "controller-revision-hash"

_ORDINAL_RE = re.compile(r"^.+-(\d+)$")
_VERSION_RE = re.compile(r"^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:[-+].*)?$")


def pd_member_name(cluster_name: str) -> str:
    """Name of the PD workload, client service and config map."""
    return f"{cluster_name}-pd"


def pd_peer_member_name(cluster_name: str) -> str:
    """Name of the headless peer service."""
    return f"{cluster_name}-pd-peer"


def pd_pod_name(cluster_name: str, ordinal: int) -> str:
    return f"{pd_member_name(cluster_name)}-{ordinal}"


def format_cluster_domain(cluster_domain: str) -> str:
    if not cluster_domain:
        return ""
    return f".{cluster_domain}"


def format_cluster_domain_for_regex(cluster_domain: str) -> str:
    if not cluster_domain:
        return ""
    return re.escape(f".{cluster_domain}")


def pd_canonical_member_name(
    cluster_name: str,
    ordinal: int,
    namespace: str,
    cluster_domain: str = "",
    across_k8s: bool = False,
) -> str:
    """The member name PD registers for the pod at `ordinal`.

    Members carry the bare pod name unless a cluster domain is configured or
    the cluster spans orchestrators, in which case they use the fully
    qualified peer DNS name.
    """
    pod_name = pd_pod_name(cluster_name, ordinal)
    if cluster_domain or across_k8s:
        return (
            f"{pod_name}.{pd_peer_member_name(cluster_name)}.{namespace}.svc"
            f"{format_cluster_domain(cluster_domain)}"
        )
    return pod_name


@lru_cache(maxsize=256)
def pd_member_pattern(cluster_name: str, namespace: str, cluster_domain: str) -> Pattern:
    """Compiled client-URL pattern for members of this cluster instance.

    Cached per (name, namespace, domain); a change in any of them yields a
    different cache key.
    """
    name = re.escape(cluster_name)
    return re.compile(
        rf"{name}-pd-\d+\.{name}-pd-peer\.{re.escape(namespace)}\.svc"
        rf"{format_cluster_domain_for_regex(cluster_domain)}:\d+"
    )


def client_url_belongs_to_cluster(
    client_url: str, cluster_name: str, namespace: str, cluster_domain: str
) -> bool:
    pattern = pd_member_pattern(cluster_name, namespace, cluster_domain)
    return pattern.search(client_url) is not None


def ordinal_from_pod_name(pod_name: str) -> int:
    match = _ORDINAL_RE.match(pod_name)
    if not match:
        raise ConfigurationError(f"unexpected pod name {pod_name!r}: no ordinal suffix")
    return int(match.group(1))


def pd_labels(instance: str) -> Dict[str, str]:
    """Selector labels shared by every PD object of one cluster."""
    return {
        LABEL_NAME: "tidb-cluster",
        LABEL_MANAGED_BY: "tidb-operator",
        LABEL_INSTANCE: instance,
        LABEL_COMPONENT: PD_COMPONENT,
    }


def label_selector(labels: Dict[str, str]) -> str:
    """Render match labels as a Kubernetes label selector string."""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def cluster_version_ge4(version: str, mode: str = "") -> bool:
    """Whether the PD version is 4.0 or newer.

    Floating tags ("nightly", "latest") are treated as new enough. Any other
    string that is not a version raises ConfigurationError.
    """
    if version in ("nightly", "latest"):
        return True
    match = _VERSION_RE.match(version or "")
    if not match:
        raise ConfigurationError(
            f"cluster version {version!r} (mode {mode or 'pd'!r}) is not semantic "
            "versioning compatible"
        )
    return int(match.group(1)) >= 4
