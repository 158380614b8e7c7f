#!/usr/bin/env python3
# src/pd_builder.py
"""
Renders the desired Kubernetes objects for the PD component of a TidbCluster.

Only object shape is decided here. Configuration file content is taken as
the user supplied it, and TLS material is not wired in.
"""

from typing import Dict, List, Optional

from kubernetes import client
from kubernetes.utils import parse_quantity

from pd_errors import ConfigurationError
from pd_naming import (
    LABEL_USED_BY,
    PD_CLIENT_PORT,
    PD_COMPONENT,
    PD_PEER_PORT,
    cluster_version_ge4,
    pd_labels,
    pd_member_name,
    pd_peer_member_name,
)
from pd_types import TidbCluster

CRD_API_VERSION = "pingcap.com/v1alpha1"
CRD_KIND = "TidbCluster"

PD_DATA_VOLUME = "pd"
PD_DATA_MOUNT_PATH = "/var/lib/pd"
DEFAULT_STORAGE_REQUEST = "1Gi"

PD_START_SCRIPT = """#!/bin/sh
set -uo pipefail
ANNOTATIONS="/etc/podinfo/annotations"
if [[ ! -f "${ANNOTATIONS}" ]]; then
    echo "${ANNOTATIONS} doesn't exist, exiting."
    exit 1
fi
source ${ANNOTATIONS} 2>/dev/null

runmode=${runmode:-normal}
if [[ X${runmode} == Xdebug ]]; then
    echo "entering debug mode."
    tail -f /dev/null
fi

PD_POD_NAME=${POD_NAME:-$HOSTNAME}
PD_DOMAIN=${PD_POD_NAME}.${PEER_SERVICE_NAME}.${NAMESPACE}.svc

ARGS="--data-dir=/var/lib/pd \\
--name=${PD_POD_NAME} \\
--peer-urls=http://0.0.0.0:2380 \\
--advertise-peer-urls=http://${PD_DOMAIN}:2380 \\
--client-urls=http://0.0.0.0:2379 \\
--advertise-client-urls=http://${PD_DOMAIN}:2379 \\
--config=/etc/pd/pd.toml"

if [[ -f /var/lib/pd/join ]]; then
    join=`cat /var/lib/pd/join | tr "," "\\n" | awk -F'=' '{print $2}' | tr "\\n" ","`
    join=${join%,}
    ARGS="${ARGS} --join=${join}"
else
    ARGS="${ARGS} --initial-cluster=${PD_POD_NAME}=http://${PD_DOMAIN}:2380"
fi

echo "starting pd-server ..."
echo "/pd-server ${ARGS}"
exec /pd-server ${ARGS}
"""


def get_owner_ref(tc: TidbCluster) -> client.V1OwnerReference:
    return client.V1OwnerReference(
        api_version=CRD_API_VERSION,
        kind=CRD_KIND,
        name=tc.name,
        uid=tc.spec.uid,
        controller=True,
        block_owner_deletion=True,
    )


def _merge(base: Dict[str, str], extra: Optional[Dict[str, str]]) -> Dict[str, str]:
    merged = dict(base)
    merged.update(extra or {})
    return merged


def parse_storage_request(request: str) -> str:
    """Validate a storage request quantity, returning it unchanged."""
    request = request or DEFAULT_STORAGE_REQUEST
    try:
        parse_quantity(request)
    except ValueError as e:
        raise ConfigurationError(f"cannot parse storage request {request!r}: {e}")
    return request


class PDObjectBuilder:
    """Default builder collaborator for PD services, config map and workload."""

    def client_service(self, tc: TidbCluster) -> client.V1Service:
        labels = _merge(pd_labels(tc.name), {LABEL_USED_BY: "end-user"})
        svc = client.V1Service(
            metadata=client.V1ObjectMeta(
                name=pd_member_name(tc.name),
                namespace=tc.namespace,
                labels=labels,
                owner_references=[get_owner_ref(tc)],
            ),
            spec=client.V1ServiceSpec(
                type="ClusterIP",
                ports=[
                    client.V1ServicePort(
                        name="client",
                        port=PD_CLIENT_PORT,
                        target_port=PD_CLIENT_PORT,
                        protocol="TCP",
                    )
                ],
                selector=pd_labels(tc.name),
            ),
        )

        overrides = tc.spec.pd.service
        if overrides is not None:
            if overrides.type:
                svc.spec.type = overrides.type
            svc.metadata.annotations = dict(overrides.annotations)
            svc.metadata.labels = _merge(svc.metadata.labels, overrides.labels)
            if overrides.load_balancer_ip is not None:
                svc.spec.load_balancer_ip = overrides.load_balancer_ip
            if overrides.cluster_ip is not None:
                svc.spec.cluster_ip = overrides.cluster_ip
            if overrides.port_name is not None:
                svc.spec.ports[0].name = overrides.port_name
        return svc

    def peer_service(self, tc: TidbCluster) -> client.V1Service:
        labels = _merge(pd_labels(tc.name), {LABEL_USED_BY: "peer"})
        return client.V1Service(
            metadata=client.V1ObjectMeta(
                name=pd_peer_member_name(tc.name),
                namespace=tc.namespace,
                labels=labels,
                owner_references=[get_owner_ref(tc)],
            ),
            spec=client.V1ServiceSpec(
                cluster_ip="None",
                ports=[
                    client.V1ServicePort(
                        name=f"tcp-peer-{PD_PEER_PORT}",
                        port=PD_PEER_PORT,
                        target_port=PD_PEER_PORT,
                        protocol="TCP",
                    ),
                    client.V1ServicePort(
                        name=f"tcp-peer-{PD_CLIENT_PORT}",
                        port=PD_CLIENT_PORT,
                        target_port=PD_CLIENT_PORT,
                        protocol="TCP",
                    ),
                ],
                selector=pd_labels(tc.name),
                publish_not_ready_addresses=True,
            ),
        )

    def config_map(self, tc: TidbCluster) -> Optional[client.V1ConfigMap]:
        """Config map holding pd.toml and the start script, if config is set.

        It is rendered as `<cluster>-pd`; the name actually written is picked
        by update_config_map_if_need according to the config update strategy.
        """
        config = tc.spec.pd.config
        if config is None:
            return None
        if not isinstance(config, str):
            raise ConfigurationError(
                f"pd.config of {tc.namespace}/{tc.name} must be TOML text"
            )
        return client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=pd_member_name(tc.name),
                namespace=tc.namespace,
                labels=pd_labels(tc.name),
                owner_references=[get_owner_ref(tc)],
            ),
            data={"config-file": config, "startup-script": PD_START_SCRIPT},
        )

    def statefulset(
        self, tc: TidbCluster, cm: Optional[client.V1ConfigMap]
    ) -> client.V1StatefulSet:
        pd = tc.spec.pd
        set_name = pd_member_name(tc.name)
        config_map_name = cm.metadata.name if cm is not None else set_name
        storage_request = parse_storage_request(pd.storage_request)

        # Malformed versions surface here, before anything is written.
        version = tc.spec.pd_version()
        if version:
            cluster_version_ge4(version, pd.mode)

        volume_mounts = [
            client.V1VolumeMount(name="annotations", mount_path="/etc/podinfo", read_only=True),
            client.V1VolumeMount(name="config", mount_path="/etc/pd", read_only=True),
            client.V1VolumeMount(
                name="startup-script", mount_path="/usr/local/bin", read_only=True
            ),
            client.V1VolumeMount(name=PD_DATA_VOLUME, mount_path=PD_DATA_MOUNT_PATH),
        ]
        volumes = [
            client.V1Volume(
                name="annotations",
                downward_api=client.V1DownwardAPIVolumeSource(
                    items=[
                        client.V1DownwardAPIVolumeFile(
                            path="annotations",
                            field_ref=client.V1ObjectFieldSelector(
                                field_path="metadata.annotations"
                            ),
                        )
                    ]
                ),
            ),
            client.V1Volume(
                name="config",
                config_map=client.V1ConfigMapVolumeSource(
                    name=config_map_name,
                    items=[client.V1KeyToPath(key="config-file", path="pd.toml")],
                ),
            ),
            client.V1Volume(
                name="startup-script",
                config_map=client.V1ConfigMapVolumeSource(
                    name=config_map_name,
                    items=[
                        client.V1KeyToPath(
                            key="startup-script", path="pd_start_script.sh"
                        )
                    ],
                ),
            ),
        ]

        env = [
            client.V1EnvVar(
                name="NAMESPACE",
                value_from=client.V1EnvVarSource(
                    field_ref=client.V1ObjectFieldSelector(field_path="metadata.namespace")
                ),
            ),
            client.V1EnvVar(name="PEER_SERVICE_NAME", value=pd_peer_member_name(tc.name)),
            client.V1EnvVar(name="SERVICE_NAME", value=set_name),
            client.V1EnvVar(name="SET_NAME", value=set_name),
            client.V1EnvVar(name="TZ", value=tc.spec.timezone),
        ]

        container = client.V1Container(
            name=PD_COMPONENT,
            image=tc.spec.pd_image(),
            image_pull_policy=pd.image_pull_policy,
            command=["/bin/sh", "/usr/local/bin/pd_start_script.sh"],
            ports=[
                client.V1ContainerPort(name="server", container_port=PD_PEER_PORT, protocol="TCP"),
                client.V1ContainerPort(name="client", container_port=PD_CLIENT_PORT, protocol="TCP"),
            ],
            env=env,
            volume_mounts=volume_mounts,
        )
        if pd.readiness_probe is not None:
            container.readiness_probe = client.V1Probe(
                tcp_socket=client.V1TCPSocketAction(port=PD_CLIENT_PORT),
                initial_delay_seconds=pd.readiness_probe.get("initialDelaySeconds", 10),
                period_seconds=pd.readiness_probe.get("periodSeconds"),
            )

        pod_annotations = _merge(
            pd.annotations,
            {
                "prometheus.io/scrape": "true",
                "prometheus.io/port": str(PD_CLIENT_PORT),
                "prometheus.io/path": "/metrics",
            },
        )
        selector_labels = pd_labels(tc.name)

        return client.V1StatefulSet(
            metadata=client.V1ObjectMeta(
                name=set_name,
                namespace=tc.namespace,
                labels=selector_labels,
                owner_references=[get_owner_ref(tc)],
            ),
            spec=client.V1StatefulSetSpec(
                replicas=tc.pd_desired_replicas(),
                selector=client.V1LabelSelector(match_labels=selector_labels),
                service_name=pd_peer_member_name(tc.name),
                pod_management_policy="Parallel",
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(
                        labels=_merge(selector_labels, pd.labels),
                        annotations=pod_annotations,
                    ),
                    spec=client.V1PodSpec(
                        containers=[container],
                        volumes=volumes,
                        service_account_name=pd.service_account
                        or tc.spec.service_account
                        or None,
                    ),
                ),
                volume_claim_templates=[
                    client.V1PersistentVolumeClaim(
                        metadata=client.V1ObjectMeta(name=PD_DATA_VOLUME),
                        spec=client.V1PersistentVolumeClaimSpec(
                            access_modes=["ReadWriteOnce"],
                            storage_class_name=pd.storage_class_name,
                            resources=client.V1VolumeResourceRequirements(
                                requests={"storage": storage_request}
                            ),
                        ),
                    )
                ],
                update_strategy=self._update_strategy(tc),
            ),
        )

    def _update_strategy(self, tc: TidbCluster) -> client.V1StatefulSetUpdateStrategy:
        if (
            tc.status.pd.vol_replace_in_progress
            or tc.spec.pd.statefulset_update_strategy == "OnDelete"
        ):
            return client.V1StatefulSetUpdateStrategy(type="OnDelete")
        partition = tc.pd_desired_replicas() + len(tc.spec.delete_slots())
        return client.V1StatefulSetUpdateStrategy(
            type="RollingUpdate",
            rolling_update=client.V1RollingUpdateStatefulSetStrategy(partition=partition),
        )


def container_image(sts: client.V1StatefulSet, name: str = PD_COMPONENT) -> str:
    """Image of the named container in the workload template, or ''."""
    containers: List[client.V1Container] = sts.spec.template.spec.containers or []
    for container in containers:
        if container.name == name:
            return container.image or ""
    return ""
