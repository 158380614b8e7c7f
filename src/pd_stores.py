#!/usr/bin/env python3
# src/pd_stores.py
"""
Object stores and listers for the PD component, backed by the Kubernetes API.

This module provides:
- Get-by-name helpers that return None on 404
- Workload create, update and update-with-precheck
- Service create and diff-and-patch
- Config map create-or-update and digest-suffixed naming
- Pod, endpoints and PVC listers
- Last-applied-configuration annotations and template comparison
"""

import hashlib
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException, RESTResponse

from pd_errors import ConfigurationError, ConflictError
from pd_types import CONFIG_UPDATE_IN_PLACE, CONFIG_UPDATE_ROLLING

logger = logging.getLogger("pd-controller.stores")

LAST_APPLIED_CONFIG_ANNOTATION = "pingcap.com/last-applied-configuration"

_api_client: Optional[client.ApiClient] = None

# Newer clients take the raw body text plus a content type; older ones take a
# RESTResponse.
_DESERIALIZE_TAKES_CONTENT_TYPE = (
    "content_type" in inspect.signature(client.ApiClient.deserialize).parameters
)


def _serializer() -> client.ApiClient:
    global _api_client
    if _api_client is None:
        _api_client = client.ApiClient()
    return _api_client


def to_dict(obj: Any) -> Any:
    """Serialize a Kubernetes model to its API (camelCase) representation."""
    return _serializer().sanitize_for_serialization(obj)


def from_dict(data: Any, model: str) -> Any:
    """Rebuild a Kubernetes model (e.g. "V1PodSpec") from its API representation."""
    body = json.dumps(data)
    if _DESERIALIZE_TAKES_CONTENT_TYPE:
        return _serializer().deserialize(body, model, "application/json")
    response = RESTResponse(urllib3.HTTPResponse(body=body.encode("utf-8"), status=200))
    return _serializer().deserialize(response, model)


def _read_or_none(read_fn, name: str, namespace: str):
    try:
        return read_fn(name, namespace)
    except ApiException as e:
        if e.status == 404:
            return None
        logger.error(f"Error reading {namespace}/{name}: {e}")
        raise


# -----------------------------
# Last applied configuration
# -----------------------------


def _annotations(obj) -> Dict[str, str]:
    if obj.metadata.annotations is None:
        obj.metadata.annotations = {}
    return obj.metadata.annotations


def set_last_applied_config_annotation(obj) -> None:
    """Record the object's spec so later passes can diff against it."""
    _annotations(obj)[LAST_APPLIED_CONFIG_ANNOTATION] = json.dumps(
        to_dict(obj.spec), sort_keys=True
    )


def _last_applied_spec(obj) -> Optional[Dict[str, Any]]:
    raw = (obj.metadata.annotations or {}).get(LAST_APPLIED_CONFIG_ANNOTATION)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"invalid {LAST_APPLIED_CONFIG_ANNOTATION} on "
            f"{obj.metadata.namespace}/{obj.metadata.name}: {e}"
        )


def get_last_applied_config(
    sts: client.V1StatefulSet,
) -> Tuple[client.V1StatefulSetSpec, client.V1PodSpec]:
    """Workload spec and pod spec recorded on the live object."""
    spec = _last_applied_spec(sts)
    if spec is None:
        raise ConfigurationError(
            f"statefulset {sts.metadata.namespace}/{sts.metadata.name} has no "
            f"{LAST_APPLIED_CONFIG_ANNOTATION} annotation"
        )
    pod_spec = (spec.get("template") or {}).get("spec") or {}
    return from_dict(spec, "V1StatefulSetSpec"), from_dict(pod_spec, "V1PodSpec")


def template_equal(new: client.V1StatefulSet, old: client.V1StatefulSet) -> bool:
    """Whether the desired pod template matches the one last applied to `old`."""
    try:
        spec = _last_applied_spec(old)
    except ConfigurationError as e:
        logger.warning(f"Treating template as changed: {e}")
        return False
    if spec is None:
        return False
    old_pod_spec = (spec.get("template") or {}).get("spec") or {}
    return old_pod_spec == to_dict(new.spec.template.spec)


def statefulset_equal(new: client.V1StatefulSet, old: client.V1StatefulSet) -> bool:
    """Whether applying `new` would change anything on `old`."""
    try:
        spec = _last_applied_spec(old)
    except ConfigurationError as e:
        logger.warning(f"Treating statefulset as changed: {e}")
        return False
    if spec is None:
        return False
    new_spec = to_dict(new.spec)
    for key in ("replicas", "template", "updateStrategy"):
        if spec.get(key) != new_spec.get(key):
            return False
    old_annotations = old.metadata.annotations or {}
    for key, value in (new.metadata.annotations or {}).items():
        if key == LAST_APPLIED_CONFIG_ANNOTATION:
            continue
        if old_annotations.get(key) != value:
            return False
    return True


def service_equal(new: client.V1Service, old: client.V1Service) -> bool:
    try:
        spec = _last_applied_spec(old)
    except ConfigurationError as e:
        logger.warning(f"Treating service as changed: {e}")
        return False
    if spec is None:
        return False
    if spec != to_dict(new.spec):
        return False
    if (new.metadata.labels or {}) != (old.metadata.labels or {}):
        return False
    old_annotations = dict(old.metadata.annotations or {})
    old_annotations.pop(LAST_APPLIED_CONFIG_ANNOTATION, None)
    new_annotations = dict(new.metadata.annotations or {})
    new_annotations.pop(LAST_APPLIED_CONFIG_ANNOTATION, None)
    return new_annotations == old_annotations


# -----------------------------
# Rolling update cursor
# -----------------------------


def set_upgrade_partition(sts: client.V1StatefulSet, partition: int) -> None:
    sts.spec.update_strategy = client.V1StatefulSetUpdateStrategy(
        type="RollingUpdate",
        rolling_update=client.V1RollingUpdateStatefulSetStrategy(partition=partition),
    )
    logger.debug(
        f"Set upgrade partition of {sts.metadata.namespace}/{sts.metadata.name} "
        f"to {partition}"
    )


def get_upgrade_partition(sts: client.V1StatefulSet) -> Optional[int]:
    strategy = sts.spec.update_strategy
    if strategy is None or strategy.rolling_update is None:
        return None
    return strategy.rolling_update.partition


def is_orphan(obj) -> bool:
    refs = obj.metadata.owner_references or []
    return not any(ref.controller for ref in refs)


def is_pod_ready(pod: client.V1Pod) -> bool:
    conditions = (pod.status.conditions if pod.status else None) or []
    return any(c.type == "Ready" and c.status == "True" for c in conditions)


# -----------------------------
# Config map naming
# -----------------------------


def find_config_map_volume(
    pod_spec: Optional[client.V1PodSpec], match: Callable[[str], bool]
) -> str:
    """Name of the first config map volume accepted by `match`, or ''."""
    if pod_spec is None:
        return ""
    for volume in pod_spec.volumes or []:
        source = volume.config_map
        if source is not None and source.name and match(source.name):
            return source.name
    return ""


def config_map_digest(data: Optional[Dict[str, str]]) -> str:
    raw = json.dumps(data or {}, sort_keys=True).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:8]


def add_config_map_digest_suffix(cm: client.V1ConfigMap) -> None:
    """Rename `cm` to `<name>-<digest of its data>`."""
    cm.metadata.name = f"{cm.metadata.name}-{config_map_digest(cm.data)}"


def update_config_map_if_need(
    configmaps: "ConfigMapStore", strategy: str, in_use_name: str, desired: client.V1ConfigMap
) -> None:
    """Pick the name `desired` is written under.

    InPlace keeps writing the config map the pods already mount. RollingUpdate
    keeps the mounted name only while its data is unchanged; new data gets a
    new digest-suffixed name, so the pod template changes and pods roll.
    """
    if strategy == CONFIG_UPDATE_IN_PLACE:
        if in_use_name:
            desired.metadata.name = in_use_name
        return
    if strategy != CONFIG_UPDATE_ROLLING:
        raise ConfigurationError(f"unknown config update strategy {strategy!r}")

    existing = configmaps.get(desired.metadata.namespace, in_use_name) if in_use_name else None
    if existing is not None and (existing.data or {}) == (desired.data or {}):
        desired.metadata.name = in_use_name
        return
    add_config_map_digest_suffix(desired)


# -----------------------------
# Stores
# -----------------------------


class StatefulSetStore:
    """Workload (StatefulSet) store."""

    def __init__(self, apps_api: client.AppsV1Api):
        self.api = apps_api

    def get(self, namespace: str, name: str) -> Optional[client.V1StatefulSet]:
        return _read_or_none(self.api.read_namespaced_stateful_set, name, namespace)

    def create(self, tc, sts: client.V1StatefulSet) -> client.V1StatefulSet:
        set_last_applied_config_annotation(sts)
        created = self.api.create_namespaced_stateful_set(
            namespace=sts.metadata.namespace, body=sts
        )
        logger.info(
            f"Created statefulset {sts.metadata.namespace}/{sts.metadata.name} "
            f"for cluster {tc.namespace}/{tc.name}"
        )
        return created

    def update(
        self, tc, new: client.V1StatefulSet, old: client.V1StatefulSet
    ) -> Optional[client.V1StatefulSet]:
        """Apply `new` onto `old` if they differ; orphaned objects are left alone."""
        if is_orphan(old):
            logger.warning(
                f"Statefulset {old.metadata.namespace}/{old.metadata.name} has no "
                f"controller owner, skip updating it for {tc.namespace}/{tc.name}"
            )
            return None
        if statefulset_equal(new, old):
            return old

        updated = old
        updated.spec.template = new.spec.template
        updated.spec.replicas = new.spec.replicas
        updated.spec.update_strategy = new.spec.update_strategy
        updated.metadata.labels = new.metadata.labels
        annotations = _annotations(updated)
        annotations.update(new.metadata.annotations or {})
        set_last_applied_config_annotation(updated)

        try:
            result = self.api.replace_namespaced_stateful_set(
                name=old.metadata.name, namespace=old.metadata.namespace, body=updated
            )
        except ApiException as e:
            if e.status == 409:
                raise ConflictError(
                    f"statefulset {old.metadata.namespace}/{old.metadata.name} "
                    f"changed since it was read: {e.reason}"
                ) from e
            raise
        logger.info(
            f"Updated statefulset {old.metadata.namespace}/{old.metadata.name} "
            f"for cluster {tc.namespace}/{tc.name}"
        )
        return result

    def update_with_precheck(
        self, tc, reason: str, new: client.V1StatefulSet, old: client.V1StatefulSet
    ) -> Optional[client.V1StatefulSet]:
        """Apply the final desired spec, no-op when it already matches.

        The replace carries the live resourceVersion, so a concurrent change
        fails with ConflictError instead of being overwritten.
        """
        if old.metadata.resource_version:
            new.metadata.resource_version = old.metadata.resource_version
        try:
            return self.update(tc, new, old)
        except ConflictError:
            logger.error(f"{reason}: {tc.namespace}/{tc.name} statefulset conflict")
            raise


class ServiceStore:
    def __init__(self, core_api: client.CoreV1Api):
        self.api = core_api

    def get(self, namespace: str, name: str) -> Optional[client.V1Service]:
        return _read_or_none(self.api.read_namespaced_service, name, namespace)

    def create(self, tc, svc: client.V1Service) -> client.V1Service:
        set_last_applied_config_annotation(svc)
        created = self.api.create_namespaced_service(
            namespace=svc.metadata.namespace, body=svc
        )
        logger.info(
            f"Created service {svc.metadata.namespace}/{svc.metadata.name} "
            f"for cluster {tc.namespace}/{tc.name}"
        )
        return created

    def sync_component_service(
        self, tc, new: client.V1Service, old: client.V1Service, keep_cluster_ip: bool
    ) -> client.V1Service:
        """Patch `old` to match `new` when the rendered service changed."""
        if service_equal(new, old):
            return old

        svc = old
        cluster_ip = old.spec.cluster_ip
        svc.spec = new.spec
        if keep_cluster_ip and cluster_ip:
            svc.spec.cluster_ip = cluster_ip
        svc.metadata.labels = new.metadata.labels
        svc.metadata.annotations = dict(new.metadata.annotations or {})
        svc.metadata.annotations[LAST_APPLIED_CONFIG_ANNOTATION] = json.dumps(
            to_dict(new.spec), sort_keys=True
        )

        patched = self.api.patch_namespaced_service(
            name=old.metadata.name, namespace=old.metadata.namespace, body=svc
        )
        logger.info(
            f"Patched service {old.metadata.namespace}/{old.metadata.name} "
            f"for cluster {tc.namespace}/{tc.name}"
        )
        return patched


class ConfigMapStore:
    def __init__(self, core_api: client.CoreV1Api):
        self.api = core_api

    def get(self, namespace: str, name: str) -> Optional[client.V1ConfigMap]:
        return _read_or_none(self.api.read_namespaced_config_map, name, namespace)

    def create_or_update(self, tc, cm: client.V1ConfigMap) -> client.V1ConfigMap:
        existing = self.get(cm.metadata.namespace, cm.metadata.name)
        if existing is None:
            created = self.api.create_namespaced_config_map(
                namespace=cm.metadata.namespace, body=cm
            )
            logger.info(
                f"Created configmap {cm.metadata.namespace}/{cm.metadata.name} "
                f"for cluster {tc.namespace}/{tc.name}"
            )
            return created

        if existing.data == cm.data and existing.metadata.labels == cm.metadata.labels:
            return existing

        existing.data = cm.data
        existing.metadata.labels = cm.metadata.labels
        updated = self.api.replace_namespaced_config_map(
            name=cm.metadata.name, namespace=cm.metadata.namespace, body=existing
        )
        logger.info(
            f"Updated configmap {cm.metadata.namespace}/{cm.metadata.name} "
            f"for cluster {tc.namespace}/{tc.name}"
        )
        return updated


class PodLister:
    def __init__(self, core_api: client.CoreV1Api):
        self.api = core_api

    def list(self, namespace: str, selector: str) -> List[client.V1Pod]:
        return self.api.list_namespaced_pod(namespace, label_selector=selector).items

    def get(self, namespace: str, name: str) -> Optional[client.V1Pod]:
        return _read_or_none(self.api.read_namespaced_pod, name, namespace)


class EndpointsLister:
    def __init__(self, core_api: client.CoreV1Api):
        self.api = core_api

    def get(self, namespace: str, name: str) -> Optional[client.V1Endpoints]:
        return _read_or_none(self.api.read_namespaced_endpoints, name, namespace)


class PVCLister:
    def __init__(self, core_api: client.CoreV1Api):
        self.api = core_api

    def get(
        self, namespace: str, name: str
    ) -> Optional[client.V1PersistentVolumeClaim]:
        return _read_or_none(
            self.api.read_namespaced_persistent_volume_claim, name, namespace
        )

    def list(self, namespace: str, selector: str) -> List[client.V1PersistentVolumeClaim]:
        return self.api.list_namespaced_persistent_volume_claim(
            namespace, label_selector=selector
        ).items

    def resolve_from_pod(self, pod: client.V1Pod) -> List[client.V1PersistentVolumeClaim]:
        """Claims currently bound to the pod's volumes.

        Claims that cannot be found are logged and skipped; a pod with no
        resolvable claim at all is an error.
        """
        namespace = pod.metadata.namespace
        pvcs = []
        for volume in pod.spec.volumes or []:
            source = volume.persistent_volume_claim
            if source is None or not source.claim_name:
                continue
            pvc = self.get(namespace, source.claim_name)
            if pvc is None:
                logger.error(
                    f"PVC {namespace}/{source.claim_name} of pod "
                    f"{namespace}/{pod.metadata.name} not found"
                )
                continue
            pvcs.append(pvc)
        if not pvcs:
            raise ConfigurationError(
                f"no PVC found for pod {namespace}/{pod.metadata.name}"
            )
        return pvcs


@dataclass
class ObjectStores:
    """Everything the PD manager reads from or writes to the orchestrator."""

    statefulsets: StatefulSetStore
    services: ServiceStore
    configmaps: ConfigMapStore
    pods: PodLister
    endpoints: EndpointsLister
    pvcs: PVCLister

    @classmethod
    def from_clients(
        cls, core_api: client.CoreV1Api, apps_api: client.AppsV1Api
    ) -> "ObjectStores":
        return cls(
            statefulsets=StatefulSetStore(apps_api),
            services=ServiceStore(core_api),
            configmaps=ConfigMapStore(core_api),
            pods=PodLister(core_api),
            endpoints=EndpointsLister(core_api),
            pvcs=PVCLister(core_api),
        )
