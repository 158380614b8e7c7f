#!/usr/bin/env python3
# tests/test_pd_naming.py
"""
Tests for object naming, the membership pattern and the version gate.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from pd_errors import ConfigurationError
from pd_naming import (
    client_url_belongs_to_cluster,
    cluster_version_ge4,
    label_selector,
    ordinal_from_pod_name,
    pd_canonical_member_name,
    pd_labels,
    pd_member_name,
    pd_member_pattern,
    pd_peer_member_name,
    pd_pod_name,
)


class TestObjectNames(unittest.TestCase):
    """Test component object names."""

    def test_component_names(self):
        """Workload, peer service and pods are named after the cluster."""
        self.assertEqual(pd_member_name("basic"), "basic-pd")
        self.assertEqual(pd_peer_member_name("basic"), "basic-pd-peer")
        self.assertEqual(pd_pod_name("basic", 2), "basic-pd-2")

    def test_canonical_member_name_without_domain(self):
        """Members register with the bare pod name by default."""
        self.assertEqual(pd_canonical_member_name("basic", 1, "tidb"), "basic-pd-1")

    def test_canonical_member_name_with_domain(self):
        """A cluster domain makes members register with their peer FQDN."""
        self.assertEqual(
            pd_canonical_member_name("basic", 1, "tidb", "cluster.local"),
            "basic-pd-1.basic-pd-peer.tidb.svc.cluster.local",
        )

    def test_canonical_member_name_across_k8s(self):
        """Clusters spanning orchestrators use the FQDN even without a domain."""
        self.assertEqual(
            pd_canonical_member_name("basic", 0, "tidb", across_k8s=True),
            "basic-pd-0.basic-pd-peer.tidb.svc",
        )

    def test_ordinal_from_pod_name(self):
        """The ordinal is the numeric suffix of the pod name."""
        self.assertEqual(ordinal_from_pod_name("basic-pd-12"), 12)

    def test_ordinal_from_pod_name_without_suffix(self):
        """A pod name without an ordinal is a configuration error."""
        with self.assertRaises(ConfigurationError):
            ordinal_from_pod_name("basic-pd")

    def test_labels_and_selector(self):
        """Selector strings are sorted key=value pairs."""
        labels = pd_labels("basic")
        self.assertEqual(labels["app.kubernetes.io/component"], "pd")
        self.assertEqual(labels["app.kubernetes.io/instance"], "basic")
        self.assertEqual(label_selector({"b": "2", "a": "1"}), "a=1,b=2")


class TestMembershipPattern(unittest.TestCase):
    """Test classification of client URLs."""

    def test_own_member_matches(self):
        """A per-ordinal peer URL of this cluster matches."""
        self.assertTrue(
            client_url_belongs_to_cluster(
                "http://basic-pd-0.basic-pd-peer.tidb.svc:2379", "basic", "tidb", ""
            )
        )

    def test_own_member_matches_with_domain(self):
        """The domain suffix is part of the pattern."""
        self.assertTrue(
            client_url_belongs_to_cluster(
                "https://basic-pd-3.basic-pd-peer.tidb.svc.cluster.local:2379",
                "basic",
                "tidb",
                "cluster.local",
            )
        )

    def test_foreign_member_does_not_match(self):
        """Members of another cluster or namespace are peers."""
        self.assertFalse(
            client_url_belongs_to_cluster(
                "http://other-pd-0.other-pd-peer.tidb.svc:2379", "basic", "tidb", ""
            )
        )
        self.assertFalse(
            client_url_belongs_to_cluster(
                "http://basic-pd-0.basic-pd-peer.prod.svc:2379", "basic", "tidb", ""
            )
        )

    def test_dots_are_literal(self):
        """Dots in the domain do not match arbitrary characters."""
        self.assertFalse(
            client_url_belongs_to_cluster(
                "http://basic-pd-0.basic-pd-peer.tidb.svc.clusterXlocal:2379",
                "basic",
                "tidb",
                "cluster.local",
            )
        )

    def test_empty_url_does_not_match(self):
        """A member without client URLs is never ours."""
        self.assertFalse(client_url_belongs_to_cluster("", "basic", "tidb", ""))

    def test_pattern_is_cached_per_identity(self):
        """The compiled pattern is reused for the same identity only."""
        first = pd_member_pattern("basic", "tidb", "")
        self.assertIs(first, pd_member_pattern("basic", "tidb", ""))
        self.assertIsNot(first, pd_member_pattern("basic", "tidb", "cluster.local"))
        self.assertIsNot(first, pd_member_pattern("basic", "prod", ""))


class TestVersionGate(unittest.TestCase):
    """Test the 4.0 version gate."""

    def test_semantic_versions(self):
        """Major version decides the result."""
        self.assertTrue(cluster_version_ge4("v4.0.0"))
        self.assertTrue(cluster_version_ge4("7.5.1"))
        self.assertTrue(cluster_version_ge4("v8.1.0-beta.1"))
        self.assertFalse(cluster_version_ge4("v3.1.2"))

    def test_floating_tags(self):
        """nightly and latest are treated as new enough."""
        self.assertTrue(cluster_version_ge4("nightly"))
        self.assertTrue(cluster_version_ge4("latest"))

    def test_malformed_version_raises(self):
        """Malformed versions are surfaced instead of assumed new."""
        with self.assertRaises(ConfigurationError):
            cluster_version_ge4("release-candidate")


if __name__ == "__main__":
    unittest.main()
