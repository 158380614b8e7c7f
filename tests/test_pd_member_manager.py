#!/usr/bin/env python3
# tests/test_pd_member_manager.py
"""
Tests for the PD reconciliation engine.

The strategies, status synchronizer and object stores are mocked; the real
builder renders desired objects so template comparisons behave as they do
against a live cluster.
"""

import os
import sys
import unittest
from unittest.mock import Mock

from kubernetes import client
from kubernetes.client.rest import ApiException

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from fixtures import live_statefulset, make_cluster, make_pod, member
from pd_builder import PDObjectBuilder, container_image
from pd_errors import ConflictError, PDClientError, RequeueError
from pd_member_manager import (
    ForceUpgradeReason,
    OutcomeKind,
    PDMemberManager,
    force_upgrade_reasons,
)
from pd_stores import add_config_map_digest_suffix, get_upgrade_partition
from pd_types import MemberPhase, TidbCluster


class EngineTestCase(unittest.TestCase):
    """Common wiring with mocked collaborators."""

    def setUp(self):
        """Create the manager with mocked stores and strategies."""
        self.stores = Mock()
        self.stores.services.get.return_value = None
        self.stores.configmaps.create_or_update.side_effect = lambda tc, cm: cm
        self.stores.configmaps.get.return_value = None
        self.stores.statefulsets.get.return_value = None
        self.scaler = Mock()
        self.upgrader = Mock()
        self.failover = Mock()
        self.suspender = Mock()
        self.suspender.suspend_component.return_value = False
        self.status_syncer = Mock()
        self.manager = PDMemberManager(
            self.stores,
            self.scaler,
            self.upgrader,
            self.failover,
            self.suspender,
            self.status_syncer,
            auto_failover=True,
        )

    def _live(self, tc, **kwargs):
        sts = live_statefulset(tc, **kwargs)
        self.stores.statefulsets.get.return_value = sts
        return sts

    def _applied(self):
        args = self.stores.statefulsets.update_with_precheck.call_args.args
        self.assertEqual(args[1], "FailedUpdatePDSTS")
        return args[2]


class TestCreationAndGating(EngineTestCase):
    """Test suspension, pause and first creation."""

    def test_first_creation(self):
        """A missing workload is created and the pass requeued."""
        tc = make_cluster()

        outcome = self.manager.sync(tc)

        self.assertEqual(outcome.kind, OutcomeKind.REQUEUE)
        self.stores.statefulsets.create.assert_called_once()
        self.assertEqual(tc.status.pd.stateful_set, {})
        self.status_syncer.sync.assert_called_once_with(tc, None)
        self.scaler.scale.assert_not_called()
        self.upgrader.upgrade.assert_not_called()
        self.failover.failover.assert_not_called()
        self.failover.recover.assert_not_called()
        self.stores.statefulsets.update_with_precheck.assert_not_called()

    def test_services_created_when_absent(self):
        """Client and peer services are created."""
        self.manager.sync(make_cluster())

        names = [c.args[1].metadata.name for c in self.stores.services.create.call_args_list]
        self.assertEqual(names, ["basic-pd", "basic-pd-peer"])

    def test_services_synced_when_present(self):
        """Existing services are diffed, keeping the client service IP."""
        self.stores.services.get.return_value = client.V1Service(
            metadata=client.V1ObjectMeta(name="existing")
        )

        self.manager.sync(make_cluster())

        keep_flags = [
            c.args[3] for c in self.stores.services.sync_component_service.call_args_list
        ]
        self.assertEqual(keep_flags, [True, False])
        self.stores.services.create.assert_not_called()

    def test_config_map_applied(self):
        """A configured cluster gets its config map written."""
        self.manager.sync(make_cluster(pd_extra={"config": "[log]\n"}))

        self.stores.configmaps.create_or_update.assert_called_once()

    def test_config_change_rolls_pods(self):
        """New config content reaches the pods through a new config map name."""
        old_tc = make_cluster(pd_extra={"config": "[log]\nlevel = 'info'\n"})
        old_cm = PDObjectBuilder().config_map(old_tc)
        add_config_map_digest_suffix(old_cm)
        self._live(old_tc, cm=old_cm)
        self.stores.configmaps.get.return_value = old_cm
        tc = make_cluster(pd_extra={"config": "[log]\nlevel = 'debug'\n"})
        tc.status.pd.synced = True

        self.manager.sync(tc)

        written = self.stores.configmaps.create_or_update.call_args.args[1]
        self.assertNotEqual(written.metadata.name, old_cm.metadata.name)
        self.upgrader.upgrade.assert_called_once()
        volumes = {v.name: v for v in self._applied().spec.template.spec.volumes}
        self.assertEqual(volumes["config"].config_map.name, written.metadata.name)

    def test_unchanged_config_keeps_name(self):
        """Unchanged config keeps the mounted config map and the template."""
        tc = make_cluster(pd_extra={"config": "[log]\nlevel = 'info'\n"})
        cm = PDObjectBuilder().config_map(tc)
        add_config_map_digest_suffix(cm)
        self._live(tc, cm=cm)
        self.stores.configmaps.get.return_value = cm
        tc.status.pd.synced = True

        self.manager.sync(tc)

        written = self.stores.configmaps.create_or_update.call_args.args[1]
        self.assertEqual(written.metadata.name, cm.metadata.name)
        self.upgrader.upgrade.assert_not_called()

    def test_suspended(self):
        """A suspended component stops the pass before anything else."""
        self.suspender.suspend_component.return_value = True

        outcome = self.manager.sync(make_cluster())

        self.assertEqual(outcome.kind, OutcomeKind.TERMINAL)
        self.stores.services.get.assert_not_called()
        self.status_syncer.sync.assert_not_called()

    def test_paused_refreshes_status_only(self):
        """A paused cluster still refreshes status but changes nothing."""
        tc = make_cluster(spec_extra={"paused": True})
        sts = self._live(tc)

        outcome = self.manager.sync(tc)

        self.assertEqual(outcome.kind, OutcomeKind.TERMINAL)
        self.stores.services.get.assert_not_called()
        self.status_syncer.sync.assert_called_once_with(tc, sts)
        self.stores.statefulsets.update_with_precheck.assert_not_called()
        self.stores.statefulsets.create.assert_not_called()

    def test_paused_with_status_error(self):
        """A status refresh failure while paused is still reported."""
        tc = make_cluster(spec_extra={"paused": True})
        self._live(tc)
        self.status_syncer.sync.side_effect = PDClientError("health unreachable")

        outcome = self.manager.sync(tc)

        self.assertEqual(outcome.kind, OutcomeKind.FAIL)
        self.assertIsInstance(outcome.error, PDClientError)

    def test_no_pd_spec(self):
        """Clusters without PD are left alone."""
        tc = TidbCluster.from_dict({"metadata": {"name": "basic", "namespace": "tidb"}})

        outcome = self.manager.sync(tc)

        self.assertEqual(outcome.kind, OutcomeKind.TERMINAL)
        self.suspender.suspend_component.assert_not_called()

    def test_store_error_fails(self):
        """Object store errors end the pass with a failure."""
        self.stores.statefulsets.get.side_effect = ApiException(status=500)

        outcome = self.manager.sync(make_cluster())

        self.assertEqual(outcome.kind, OutcomeKind.FAIL)


class TestForcedUpgrade(EngineTestCase):
    """Test the forced upgrade step."""

    def test_single_replica_forced_upgrade(self):
        """A single replica without peers is upgraded all at once."""
        self._live(make_cluster(replicas=1))
        tc = make_cluster(replicas=1, version="v7.5.1")

        outcome = self.manager.sync(tc)

        self.assertEqual(outcome.kind, OutcomeKind.REQUEUE)
        self.assertIn("SingleReplicaNoPeers", outcome.message)
        self.assertEqual(tc.status.pd.phase, MemberPhase.UPGRADE)
        new_set = self.stores.statefulsets.update.call_args.args[1]
        self.assertEqual(get_upgrade_partition(new_set), 0)
        self.scaler.scale.assert_not_called()
        self.upgrader.upgrade.assert_not_called()
        self.stores.statefulsets.update_with_precheck.assert_not_called()

    def test_explicit_directive(self):
        """The force-upgrade annotation forces a multi-replica cluster."""
        self._live(make_cluster())
        tc = make_cluster(
            version="v7.5.1", annotations={"tidb.pingcap.com/force-upgrade": "true"}
        )

        outcome = self.manager.sync(tc)

        self.assertEqual(outcome.kind, OutcomeKind.REQUEUE)
        self.assertIn("ExplicitDirective", outcome.message)
        self.scaler.scale.assert_not_called()

    def test_synced_cluster_upgrades_gracefully(self):
        """A synced cluster takes the graceful path."""
        self._live(make_cluster(replicas=1))
        tc = make_cluster(replicas=1, version="v7.5.1")
        tc.status.pd.synced = True

        outcome = self.manager.sync(tc)

        self.assertEqual(outcome.kind, OutcomeKind.TERMINAL)
        self.stores.statefulsets.update.assert_not_called()
        self.upgrader.upgrade.assert_called_once()

    def test_peers_prevent_forced_upgrade(self):
        """Recorded peer members allow a graceful upgrade."""
        self._live(make_cluster(replicas=1))
        tc = make_cluster(replicas=1, version="v7.5.1")
        tc.status.pd.peer_members = {"meta-pd-0": member(0, cluster="meta")}

        outcome = self.manager.sync(tc)

        self.assertEqual(outcome.kind, OutcomeKind.TERMINAL)
        self.stores.statefulsets.update.assert_not_called()

    def test_unchanged_template_not_forced(self):
        """Without a spec change there is nothing to force."""
        tc = make_cluster(replicas=1)
        self._live(tc)

        outcome = self.manager.sync(tc)

        self.assertEqual(outcome.kind, OutcomeKind.TERMINAL)
        self.stores.statefulsets.update.assert_not_called()

    def test_forced_upgrade_despite_status_error(self):
        """A failed status refresh does not block a forced upgrade."""
        self._live(make_cluster(replicas=1))
        tc = make_cluster(replicas=1, version="v7.5.1")
        self.status_syncer.sync.side_effect = PDClientError("health unreachable")

        outcome = self.manager.sync(tc)

        self.assertEqual(outcome.kind, OutcomeKind.REQUEUE)

    def test_forced_update_failure(self):
        """A failed forced update is reported as a failure."""
        self._live(make_cluster(replicas=1))
        self.stores.statefulsets.update.side_effect = ConflictError("changed")

        outcome = self.manager.sync(make_cluster(replicas=1, version="v7.5.1"))

        self.assertEqual(outcome.kind, OutcomeKind.FAIL)

    def test_reasons_are_independent(self):
        """Both trigger reasons can hold at once."""
        old = live_statefulset(make_cluster(replicas=1))
        tc = make_cluster(replicas=1, annotations={"tidb.pingcap.com/force-upgrade": "true"})
        self.assertEqual(
            force_upgrade_reasons(tc, old),
            {ForceUpgradeReason.EXPLICIT_DIRECTIVE, ForceUpgradeReason.SINGLE_REPLICA_NO_PEERS},
        )
        self.assertEqual(force_upgrade_reasons(make_cluster(), live_statefulset(make_cluster())), set())


class TestScaleAndUpgrade(EngineTestCase):
    """Test precedence between scaling and upgrading."""

    def test_scale_over_upgrade(self):
        """While scaling, the upgrader is not reached and the template is held."""
        self._live(make_cluster(replicas=3))
        tc = make_cluster(replicas=5, version="v7.5.1")
        tc.status.pd.synced = True
        self.status_syncer.sync.side_effect = lambda tc, sts: setattr(
            tc.status.pd, "phase", MemberPhase.SCALE
        )

        outcome = self.manager.sync(tc)

        self.assertEqual(outcome.kind, OutcomeKind.TERMINAL)
        self.scaler.scale.assert_called_once()
        self.upgrader.upgrade.assert_not_called()
        self.assertEqual(container_image(self._applied()), "pingcap/pd:v7.5.0")

    def test_upgrade_after_scale_converged(self):
        """Once replicas match, the template change reaches the upgrader."""
        self._live(make_cluster(replicas=5))
        tc = make_cluster(replicas=5, version="v7.5.1")
        tc.status.pd.synced = True

        self.manager.sync(tc)

        self.upgrader.upgrade.assert_called_once()
        self.assertEqual(container_image(self._applied()), "pingcap/pd:v7.5.1")

    def test_upgrade_phase_reaches_upgrader(self):
        """An in-progress rollout keeps calling the upgrader."""
        tc = make_cluster()
        tc.status.pd.synced = True
        tc.status.pd.phase = MemberPhase.UPGRADE
        self._live(tc)

        self.manager.sync(tc)

        self.upgrader.upgrade.assert_called_once()

    def test_steady_state_applies_without_upgrade(self):
        """A converged cluster is applied with a precheck only."""
        tc = make_cluster()
        tc.status.pd.synced = True
        self._live(tc)

        outcome = self.manager.sync(tc)

        self.assertEqual(outcome.kind, OutcomeKind.TERMINAL)
        self.upgrader.upgrade.assert_not_called()
        self._applied()

    def test_upgrader_requeue(self):
        """A requeue from the upgrader ends the pass before apply."""
        tc = make_cluster()
        tc.status.pd.phase = MemberPhase.UPGRADE
        self._live(tc)
        self.upgrader.upgrade.side_effect = RequeueError("pod basic-pd-2 not ready")

        outcome = self.manager.sync(tc)

        self.assertEqual(outcome.kind, OutcomeKind.REQUEUE)
        self.stores.statefulsets.update_with_precheck.assert_not_called()

    def test_apply_conflict(self):
        """A precheck conflict fails the pass."""
        tc = make_cluster()
        self._live(tc)
        self.stores.statefulsets.update_with_precheck.side_effect = ConflictError("changed")

        outcome = self.manager.sync(tc)

        self.assertEqual(outcome.kind, OutcomeKind.FAIL)
        self.assertIsInstance(outcome.error, ConflictError)

    def test_status_error_applies_then_fails(self):
        """A status refresh error lets the pass finish but reports failure."""
        tc = make_cluster()
        self._live(tc)
        self.status_syncer.sync.side_effect = PDClientError("health unreachable")

        outcome = self.manager.sync(tc)

        self.assertEqual(outcome.kind, OutcomeKind.FAIL)
        self.assertIsInstance(outcome.error, PDClientError)
        self.stores.statefulsets.update_with_precheck.assert_called_once()


class TestFailoverAndVolumeReplace(EngineTestCase):
    """Test the failover step and the volume-replace freeze."""

    def _cluster(self):
        tc = make_cluster()
        tc.status.pd.synced = True
        tc.status.pd.stateful_set = {"replicas": 3}
        tc.status.pd.members = {m.name: m for m in (member(0), member(1), member(2))}
        self._live(tc)
        return tc

    def test_failover_when_members_unhealthy(self):
        """All pods started but a member unhealthy triggers failover."""
        tc = self._cluster()
        tc.status.pd.members["basic-pd-1"] = member(1, healthy=False)

        self.manager.sync(tc)

        self.failover.failover.assert_called_once_with(tc)
        self.failover.recover.assert_not_called()

    def test_recover_when_all_healthy(self):
        """Recovery runs once every desired member is healthy again."""
        tc = self._cluster()
        tc.status.pd.failure_members = {}
        self.stores.pods.get.side_effect = lambda namespace, name: make_pod(name)

        self.manager.sync(tc)

        self.failover.recover.assert_called_once_with(tc)
        self.failover.failover.assert_not_called()

    def test_failover_needs_limit(self):
        """A zero failover limit disables failover."""
        tc = self._cluster()
        tc.spec.pd.max_failover_count = 0
        tc.status.pd.members["basic-pd-1"] = member(1, healthy=False)

        self.manager.sync(tc)

        self.failover.failover.assert_not_called()

    def test_auto_failover_disabled(self):
        """With auto failover off neither recover nor failover runs."""
        self.manager.auto_failover = False
        tc = self._cluster()
        tc.status.pd.members["basic-pd-1"] = member(1, healthy=False)

        self.manager.sync(tc)

        self.failover.failover.assert_not_called()
        self.failover.recover.assert_not_called()

    def test_volume_replace_freezes_template(self):
        """During a volume replace the live pod template is kept."""
        self._live(make_cluster())
        tc = make_cluster(version="v7.5.1")
        tc.status.pd.synced = True
        tc.status.pd.vol_replace_in_progress = True

        self.manager.sync(tc)

        self.assertEqual(container_image(self._applied()), "pingcap/pd:v7.5.0")


if __name__ == "__main__":
    unittest.main()
