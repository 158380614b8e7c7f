#!/usr/bin/env python3
# src/pd_member_manager.py
"""
Reconciliation engine for the PD component of a TidbCluster.

One call to PDMemberManager.sync() runs an ordered pipeline of steps. Each
step returns an Outcome; the first outcome that is not CONTINUE ends the pass.

Order of steps:
- suspend check
- client and peer services
- fetch the workload and refresh status (always, even while paused)
- pause check
- render config map and desired workload
- create the workload if absent (requeue)
- forced upgrade (requeue)
- scale, failover, volume-replace freeze, upgrade
- apply the desired workload with a precheck
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Set

from kubernetes import client
from kubernetes.client.rest import ApiException

from pd_builder import PDObjectBuilder
from pd_errors import PDControllerError, RequeueError
from pd_failover import should_recover
from pd_naming import PD_COMPONENT, pd_member_name
from pd_status import StatusSynchronizer
from pd_stores import (
    ObjectStores,
    find_config_map_volume,
    get_last_applied_config,
    set_upgrade_partition,
    template_equal,
    update_config_map_if_need,
)
from pd_strategies import Failover, Scaler, Suspender, Upgrader
from pd_types import MemberPhase, TidbCluster

logger = logging.getLogger("pd-controller.engine")

AUTO_FAILOVER = os.environ.get("AUTO_FAILOVER", "true").lower() in ("true", "1", "yes")

UPDATE_FAILED_REASON = "FailedUpdatePDSTS"


class OutcomeKind(Enum):
    CONTINUE = "continue"
    REQUEUE = "requeue"
    FAIL = "fail"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    message: str = ""
    error: Optional[BaseException] = None

    @classmethod
    def cont(cls) -> "Outcome":
        return cls(OutcomeKind.CONTINUE)

    @classmethod
    def requeue(cls, message: str) -> "Outcome":
        return cls(OutcomeKind.REQUEUE, message)

    @classmethod
    def fail(cls, error: BaseException) -> "Outcome":
        return cls(OutcomeKind.FAIL, str(error), error)

    @classmethod
    def terminal(cls, message: str = "") -> "Outcome":
        return cls(OutcomeKind.TERMINAL, message)


class ForceUpgradeReason(str, Enum):
    EXPLICIT_DIRECTIVE = "ExplicitDirective"
    SINGLE_REPLICA_NO_PEERS = "SingleReplicaNoPeers"


def force_upgrade_reasons(
    tc: TidbCluster, old_set: client.V1StatefulSet
) -> Set[ForceUpgradeReason]:
    """Reasons why a graceful rollout cannot work for this cluster right now."""
    reasons: Set[ForceUpgradeReason] = set()
    if tc.spec.force_upgrade_requested():
        reasons.add(ForceUpgradeReason.EXPLICIT_DIRECTIVE)
    if (old_set.spec.replicas or 0) < 2 and not tc.status.pd.peer_members:
        reasons.add(ForceUpgradeReason.SINGLE_REPLICA_NO_PEERS)
    return reasons


@dataclass
class _SyncContext:
    """State threaded through the steps of one pass."""

    tc: TidbCluster
    old_set: Optional[client.V1StatefulSet] = None
    new_set: Optional[client.V1StatefulSet] = None
    status_error: Optional[BaseException] = None


class PDMemberManager:
    """Converges the PD services and StatefulSet of a TidbCluster."""

    def __init__(
        self,
        stores: ObjectStores,
        scaler: Scaler,
        upgrader: Upgrader,
        failover: Failover,
        suspender: Suspender,
        status_syncer: StatusSynchronizer,
        builder: Optional[PDObjectBuilder] = None,
        auto_failover: bool = AUTO_FAILOVER,
    ):
        self.stores = stores
        self.scaler = scaler
        self.upgrader = upgrader
        self.failover = failover
        self.suspender = suspender
        self.status_syncer = status_syncer
        self.builder = builder or PDObjectBuilder()
        self.auto_failover = auto_failover

    def _steps(self) -> List[Callable[[_SyncContext], Outcome]]:
        return [
            self._check_suspended,
            self._sync_services,
            self._refresh_status,
            self._check_paused,
            self._render,
            self._create_if_absent,
            self._force_upgrade,
            self._scale,
            self._failover,
            self._freeze_for_volume_replace,
            self._upgrade,
            self._apply,
        ]

    def sync(self, tc: TidbCluster) -> Outcome:
        if tc.spec.pd is None:
            return Outcome.terminal("no pd spec")

        ctx = _SyncContext(tc=tc)
        outcome = Outcome.terminal("pd synced")
        for step in self._steps():
            try:
                result = step(ctx)
            except RequeueError as e:
                result = Outcome.requeue(str(e))
            except (PDControllerError, ApiException) as e:
                logger.error(f"{step.__name__} failed for {tc.namespace}/{tc.name}: {e}")
                result = Outcome.fail(e)
            if result.kind is not OutcomeKind.CONTINUE:
                outcome = result
                break

        # A failed status refresh must still be retried even if the rest of
        # the pass went through.
        if ctx.status_error is not None and outcome.kind in (
            OutcomeKind.CONTINUE,
            OutcomeKind.TERMINAL,
        ):
            outcome = Outcome.fail(ctx.status_error)

        logger.debug(
            f"PD sync of {tc.namespace}/{tc.name} ended with {outcome.kind.value}: "
            f"{outcome.message}"
        )
        return outcome

    # -----------------------------
    # Steps
    # -----------------------------

    def _check_suspended(self, ctx: _SyncContext) -> Outcome:
        if self.suspender.suspend_component(ctx.tc, PD_COMPONENT):
            return Outcome.terminal("pd is suspended")
        return Outcome.cont()

    def _sync_services(self, ctx: _SyncContext) -> Outcome:
        tc = ctx.tc
        if tc.spec.paused:
            logger.info(f"TidbCluster {tc.namespace}/{tc.name} is paused, skip syncing pd services")
            return Outcome.cont()

        for new_svc, keep_cluster_ip in (
            (self.builder.client_service(tc), True),
            (self.builder.peer_service(tc), False),
        ):
            old_svc = self.stores.services.get(tc.namespace, new_svc.metadata.name)
            if old_svc is None:
                self.stores.services.create(tc, new_svc)
            else:
                self.stores.services.sync_component_service(
                    tc, new_svc, old_svc, keep_cluster_ip
                )
        return Outcome.cont()

    def _refresh_status(self, ctx: _SyncContext) -> Outcome:
        tc = ctx.tc
        ctx.old_set = self.stores.statefulsets.get(tc.namespace, pd_member_name(tc.name))
        try:
            self.status_syncer.sync(tc, ctx.old_set)
        except (PDControllerError, ApiException) as e:
            logger.error(f"failed to sync TidbCluster {tc.namespace}/{tc.name}'s status: {e}")
            ctx.status_error = e
        return Outcome.cont()

    def _check_paused(self, ctx: _SyncContext) -> Outcome:
        tc = ctx.tc
        if tc.spec.paused:
            logger.info(
                f"TidbCluster {tc.namespace}/{tc.name} is paused, skip syncing pd statefulset"
            )
            return Outcome.terminal("paused")
        return Outcome.cont()

    def _render(self, ctx: _SyncContext) -> Outcome:
        tc = ctx.tc
        if tc.spec.pd.mode == "ms" and not tc.spec.pdms_enabled:
            logger.info(f"TidbCluster {tc.namespace}/{tc.name} sets pd mode ms without pdms")
        elif tc.spec.pd.mode != "ms" and tc.spec.pdms_enabled:
            logger.info(f"TidbCluster {tc.namespace}/{tc.name} enables pdms without pd mode ms")

        cm = self.builder.config_map(tc)
        if cm is not None:
            in_use_name = find_config_map_volume(
                ctx.old_set.spec.template.spec if ctx.old_set is not None else None,
                lambda name: name.startswith(pd_member_name(tc.name)),
            )
            update_config_map_if_need(
                self.stores.configmaps, tc.spec.pd.config_update_strategy, in_use_name, cm
            )
            cm = self.stores.configmaps.create_or_update(tc, cm)
        ctx.new_set = self.builder.statefulset(tc, cm)
        return Outcome.cont()

    def _create_if_absent(self, ctx: _SyncContext) -> Outcome:
        if ctx.old_set is not None:
            return Outcome.cont()
        tc = ctx.tc
        self.stores.statefulsets.create(tc, ctx.new_set)
        tc.status.pd.stateful_set = {}
        return Outcome.requeue(
            f"TidbCluster {tc.namespace}/{tc.name} pd statefulset created, waiting for it"
        )

    def _force_upgrade(self, ctx: _SyncContext) -> Outcome:
        tc, old_set, new_set = ctx.tc, ctx.old_set, ctx.new_set
        if tc.status.pd.synced or template_equal(new_set, old_set):
            return Outcome.cont()
        reasons = force_upgrade_reasons(tc, old_set)
        if not reasons:
            return Outcome.cont()

        names = ", ".join(sorted(r.value for r in reasons))
        logger.warning(f"Forcing pd upgrade of {tc.namespace}/{tc.name} ({names})")
        tc.status.pd.phase = MemberPhase.UPGRADE
        set_upgrade_partition(new_set, 0)
        self.stores.statefulsets.update(tc, new_set, old_set)
        return Outcome.requeue(f"TidbCluster {tc.namespace}/{tc.name} forced pd upgrade ({names})")

    def _scale(self, ctx: _SyncContext) -> Outcome:
        self.scaler.scale(ctx.tc, ctx.old_set, ctx.new_set)
        return Outcome.cont()

    def _failover(self, ctx: _SyncContext) -> Outcome:
        tc = ctx.tc
        if not self.auto_failover:
            return Outcome.cont()
        if should_recover(tc, self.stores.pods):
            self.failover.recover(tc)
        elif (tc.spec.pd.max_failover_count or 0) > 0 and (
            (tc.pd_all_pods_started() and not tc.pd_all_members_ready())
            or tc.pd_auto_failovering()
        ):
            self.failover.failover(tc)
        return Outcome.cont()

    def _freeze_for_volume_replace(self, ctx: _SyncContext) -> Outcome:
        if ctx.tc.status.pd.vol_replace_in_progress:
            _, pod_spec = get_last_applied_config(ctx.old_set)
            ctx.new_set.spec.template.spec = pod_spec
        return Outcome.cont()

    def _upgrade(self, ctx: _SyncContext) -> Outcome:
        tc = ctx.tc
        phase = tc.status.pd.phase
        if template_equal(ctx.new_set, ctx.old_set) and phase != MemberPhase.UPGRADE:
            return Outcome.cont()
        if phase == MemberPhase.SCALE:
            # Hold the live pod template until replicas converge.
            logger.info(
                f"TidbCluster {tc.namespace}/{tc.name}'s pd is scaling, can not upgrade pd"
            )
            _, pod_spec = get_last_applied_config(ctx.old_set)
            ctx.new_set.spec.template.spec = pod_spec
            return Outcome.cont()
        self.upgrader.upgrade(tc, ctx.old_set, ctx.new_set)
        return Outcome.cont()

    def _apply(self, ctx: _SyncContext) -> Outcome:
        self.stores.statefulsets.update_with_precheck(
            ctx.tc, UPDATE_FAILED_REASON, ctx.new_set, ctx.old_set
        )
        return Outcome.cont()
