#!/usr/bin/env python3
# src/pd_client.py
"""
HTTP client for the PD API.

Only the three read queries the status synchronizer needs are implemented:
member health, cluster identity and the current leader. Calls are
synchronous and never retried here; the reconcile loop owns retries.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, List

import requests

from pd_errors import PDClientError
from pd_naming import PD_CLIENT_PORT, format_cluster_domain, pd_member_name

logger = logging.getLogger("pd-controller.client")

PD_CLIENT_TIMEOUT = float(os.environ.get("PD_CLIENT_TIMEOUT", "5"))
PD_CLIENT_SCHEME = os.environ.get("PD_CLIENT_SCHEME", "http")

HEALTH_PREFIX = "pd/api/v1/health"
CLUSTER_PREFIX = "pd/api/v1/cluster"
LEADER_PREFIX = "pd/api/v1/leader"


@dataclass
class MemberHealth:
    name: str
    member_id: int
    client_urls: List[str]
    health: bool


@dataclass
class ClusterInfo:
    id: int


@dataclass
class LeaderInfo:
    name: str
    member_id: int = 0


class PDClient:
    """Read-only client for one PD cluster endpoint."""

    def __init__(self, url: str, timeout: float = PD_CLIENT_TIMEOUT):
        self.url = url.rstrip("/")
        self.timeout = timeout

    def _get_json(self, prefix: str) -> Any:
        api_url = f"{self.url}/{prefix}"
        try:
            response = requests.get(
                api_url,
                timeout=self.timeout,
                headers={"User-Agent": "pd-controller/1.0"},
            )
        except requests.RequestException as e:
            raise PDClientError(f"GET {api_url} failed: {e}") from e

        if response.status_code != 200:
            raise PDClientError(
                f"GET {api_url} returned HTTP {response.status_code}: {response.text}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise PDClientError(f"GET {api_url} returned invalid JSON: {e}") from e

    def get_health(self) -> List[MemberHealth]:
        data = self._get_json(HEALTH_PREFIX)
        if not isinstance(data, list):
            raise PDClientError(f"unexpected health response: {data!r}")
        try:
            return [
                MemberHealth(
                    name=item.get("name", ""),
                    member_id=int(item.get("member_id", 0)),
                    client_urls=list(item.get("client_urls") or []),
                    health=bool(item.get("health", False)),
                )
                for item in data
            ]
        except (AttributeError, TypeError, ValueError) as e:
            raise PDClientError(f"malformed health response {data!r}: {e}") from e

    def get_cluster(self) -> ClusterInfo:
        data = self._get_json(CLUSTER_PREFIX)
        if not isinstance(data, dict) or "id" not in data:
            raise PDClientError(f"unexpected cluster response: {data!r}")
        try:
            return ClusterInfo(id=int(data["id"]))
        except (TypeError, ValueError) as e:
            raise PDClientError(f"malformed cluster response {data!r}: {e}") from e

    def get_pd_leader(self) -> LeaderInfo:
        data = self._get_json(LEADER_PREFIX)
        if not isinstance(data, dict):
            raise PDClientError(f"unexpected leader response: {data!r}")
        try:
            return LeaderInfo(
                name=data.get("name", ""), member_id=int(data.get("member_id", 0))
            )
        except (TypeError, ValueError) as e:
            raise PDClientError(f"malformed leader response {data!r}: {e}") from e


def pd_client_url(cluster_name: str, namespace: str, cluster_domain: str = "") -> str:
    """URL of the PD client service for a cluster."""
    host = f"{pd_member_name(cluster_name)}.{namespace}"
    if cluster_domain:
        host = f"{host}.svc{format_cluster_domain(cluster_domain)}"
    return f"{PD_CLIENT_SCHEME}://{host}:{PD_CLIENT_PORT}"


def get_pd_client(tc) -> PDClient:
    """Default client factory used by the status synchronizer."""
    url = pd_client_url(tc.name, tc.namespace, tc.spec.cluster_domain)
    logger.debug(f"Using PD client {url} for cluster {tc.namespace}/{tc.name}")
    return PDClient(url)
