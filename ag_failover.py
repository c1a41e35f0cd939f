"""
Availability Group failover: safety decision and command execution

decide_failover() is a pure rule list evaluated top to bottom (first match wins).
FailoverRunner carries a decision out: ALTER AVAILABILITY GROUP on the target,
a fixed settle wait, replication resume after forced failovers, the cluster
quorum override for disaster recovery, and optional cluster group relocation.
"""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional

from ag_errors import ClusterCommandError, FailoverCommandError
from ag_models import FailoverRequest, HealthState, require_topology
from ag_queries import forced_failover_statement, failover_statement, resume_database_statement
from ag_state import get_replica_state, replica_health
from cluster_groups import CORE_CLUSTER_GROUP, ClusterGroupMoveResult, move_cluster_groups, node_name_of
from sql_query_executor import SqlQueryExecutor

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_SECONDS = 10


class FailoverAction(Enum):
    REJECT_NOT_A_REPLICA = "reject_not_a_replica"
    NO_OP_ALREADY_PRIMARY = "no_op_already_primary"
    REJECT_UNHEALTHY = "reject_unhealthy"
    REJECT_ASYNC_REQUIRES_FORCE = "reject_async_requires_force"
    REJECT_TARGET_UNHEALTHY = "reject_target_unhealthy"
    FORCED_FAILOVER = "forced_failover"
    DISASTER_RECOVERY_FAILOVER = "disaster_recovery_failover"
    PLANNED_FAILOVER = "planned_failover"

    @property
    def is_rejection(self) -> bool:
        return self.value.startswith("reject")

    @property
    def mutates(self) -> bool:
        return self in (FailoverAction.FORCED_FAILOVER,
                        FailoverAction.DISASTER_RECOVERY_FAILOVER,
                        FailoverAction.PLANNED_FAILOVER)


@dataclass(frozen=True)
class FailoverDecision:
    action: FailoverAction
    availability_group: str
    target_node: str
    message: str

    @property
    def requires_confirmation(self) -> bool:
        return self.action is FailoverAction.DISASTER_RECOVERY_FAILOVER


def decide_failover(request: FailoverRequest, target_health: Optional[HealthState] = None) -> FailoverDecision:
    """
    Decide what a failover request is allowed to do. No I/O and no logging here.

    target_health is the synchronization health of the target replica; it is only
    consulted for a forced failover to an asynchronous replica.
    """
    topology = require_topology(request.topology)
    target = topology.canonical_replica_name(request.target_node)

    def decision(action, message):
        return FailoverDecision(action, topology.name, target or request.target_node, message)

    if target is None:
        return decision(FailoverAction.REJECT_NOT_A_REPLICA,
                        f"{request.target_node} is not a valid replica of {topology.name} "
                        f"(replicas: {', '.join(topology.replicas)})")

    if topology.is_primary(target):
        return decision(FailoverAction.NO_OP_ALREADY_PRIMARY,
                        f"{target} is already the primary replica of {topology.name}, nothing to do")

    unhealthy = topology.health_state is not HealthState.HEALTHY
    if (unhealthy or not topology.has_listener) and not request.force:
        problems = []
        if unhealthy:
            problems.append(f"health state is {topology.health_state.value}")
        if not topology.has_listener:
            problems.append("no listener is configured")
        return decision(FailoverAction.REJECT_UNHEALTHY,
                        f"{topology.name} cannot be failed over safely: {' and '.join(problems)}. "
                        "Use force together with fix-quorum only for disaster recovery.")

    if topology.is_asynchronous(target):
        if not request.force:
            return decision(FailoverAction.REJECT_ASYNC_REQUIRES_FORCE,
                            f"{target} is an asynchronous-commit replica of {topology.name}; failing over "
                            "to it can lose data. Use force to fail over anyway.")
        if not request.fix_quorum:
            if target_health is not HealthState.HEALTHY:
                state = target_health.value if target_health is not None else "UNKNOWN"
                return decision(FailoverAction.REJECT_TARGET_UNHEALTHY,
                                f"{target} synchronization health is {state}; forced failover of "
                                f"{topology.name} requires a HEALTHY target")
            return decision(FailoverAction.FORCED_FAILOVER,
                            f"Forcing failover of {topology.name} to {target} with possible data loss")
        return decision(FailoverAction.DISASTER_RECOVERY_FAILOVER,
                        f"Disaster recovery: cluster quorum will be forced onto {node_name_of(target)} "
                        f"(vote weight 1, every other node 0) and {topology.name} forced onto {target} "
                        "with possible data loss")

    return decision(FailoverAction.PLANNED_FAILOVER,
                    f"Failing over {topology.name} to synchronous replica {target}")


@dataclass
class FailoverOutcome:
    decision: FailoverDecision
    moved: bool = False
    commands: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def availability_group(self) -> str:
        return self.decision.availability_group

    @property
    def target_node(self) -> str:
        return self.decision.target_node

    def to_dict(self) -> dict:
        return {
            'availability_group': self.availability_group,
            'target_node': self.target_node,
            'action': self.decision.action.value,
            'message': self.decision.message,
            'moved': self.moved,
            'commands': list(self.commands),
            'error': self.error,
        }


@dataclass
class FailoverBatchResult:
    outcomes: List[FailoverOutcome] = field(default_factory=list)
    cluster_moves: List[ClusterGroupMoveResult] = field(default_factory=list)

    @property
    def any_moved(self) -> bool:
        return any(outcome.moved for outcome in self.outcomes)

    @property
    def has_problems(self) -> bool:
        return any(outcome.error or outcome.decision.action.is_rejection for outcome in self.outcomes) or \
            any(move.error for move in self.cluster_moves)


def _decline(prompt: str) -> bool:
    return False


class FailoverRunner:
    def __init__(self, executor: SqlQueryExecutor, cluster_client=None,
                 confirm: Optional[Callable[[str], bool]] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 settle_seconds: float = DEFAULT_SETTLE_SECONDS):
        self.executor = executor
        self.cluster_client = cluster_client
        self.confirm = confirm or _decline
        self.sleep = sleep
        self.settle_seconds = settle_seconds

    def _run_command(self, server: str, statement: str, outcome: FailoverOutcome):
        outcome.commands.append(f"{server}: {statement}")
        result = self.executor.execute([server], statement, database="master", suppress_server_column=True)[0]
        if not result.ok:
            raise FailoverCommandError(result.error)
        if result.errors:
            raise FailoverCommandError(f"{server}: " + "; ".join(message.text for message in result.errors))

    def _target_health(self, request, topology, replica_states) -> Optional[HealthState]:
        if not (topology.is_asynchronous(request.target_node) and request.force and not request.fix_quorum):
            return None
        if replica_states is None:
            replica_states = get_replica_state(topology, executor=self.executor)
        return replica_health(replica_states, request.target_node)

    def _settle(self):
        logger.info(f"Waiting {self.settle_seconds} seconds for the availability group to settle")
        self.sleep(self.settle_seconds)

    def _resume_replication(self, target: str, topology, outcome: FailoverOutcome):
        failures = []
        for database_name in topology.databases:
            try:
                self._run_command(target, resume_database_statement(database_name), outcome)
            except FailoverCommandError as e:
                logger.error(f"Could not resume {database_name} on {target}: {e}")
                failures.append(database_name)
        if failures:
            outcome.error = f"Replication not resumed for: {', '.join(failures)}"

    def _force_quorum(self, target: str, outcome: FailoverOutcome):
        if self.cluster_client is None:
            raise ClusterCommandError("quorum override", -1, "No cluster client configured")
        node = node_name_of(target)
        for cluster_node in self.cluster_client.get_cluster_nodes(node):
            weight = 1 if cluster_node.name.upper() == node.upper() else 0
            outcome.commands.append(f"{node}: set NodeWeight={weight} on {cluster_node.name}")
            self.cluster_client.set_node_weight(node, cluster_node.name, weight)
        outcome.commands.append(f"{node}: Stop-ClusterNode {node}")
        self.cluster_client.stop_cluster_node(node, node)
        outcome.commands.append(f"{node}: Start-ClusterNode {node} -FixQuorum")
        self.cluster_client.start_cluster_node(node, node, force_quorum=True)

    def failover(self, request: FailoverRequest, replica_states=None) -> FailoverOutcome:
        topology = require_topology(request.topology)
        decision = decide_failover(request, self._target_health(request, topology, replica_states))
        outcome = FailoverOutcome(decision=decision)
        target = decision.target_node

        if decision.action is FailoverAction.NO_OP_ALREADY_PRIMARY:
            logger.info(decision.message)
            return outcome
        if decision.action.is_rejection:
            logger.warning(decision.message)
            return outcome

        if decision.requires_confirmation and not self.confirm(decision.message + ". Continue?"):
            outcome.error = "Disaster recovery failover cancelled by operator"
            logger.warning(f"{topology.name}: {outcome.error}")
            return outcome

        logger.info(decision.message)
        try:
            if decision.action is FailoverAction.PLANNED_FAILOVER:
                self._run_command(target, failover_statement(topology.name), outcome)
                outcome.moved = True
                self._settle()
            else:
                # no rollback between these steps; a failure leaves the cluster where it stopped
                if decision.action is FailoverAction.DISASTER_RECOVERY_FAILOVER:
                    self._force_quorum(target, outcome)
                self._run_command(target, forced_failover_statement(topology.name), outcome)
                outcome.moved = True
                self._settle()
                self._resume_replication(target, topology, outcome)
        except (FailoverCommandError, ClusterCommandError) as e:
            outcome.error = f"{topology.name} -> {target}: {e}"
            logger.error(f"Failover failed: {outcome.error}")
        return outcome

    def relocate_cluster_group(self, target_node: str, any_moved: bool,
                               group_names: Iterable[str] = (CORE_CLUSTER_GROUP,)) -> List[ClusterGroupMoveResult]:
        node = node_name_of(target_node)
        if not any_moved and not self.confirm(
                f"No availability groups were moved to {node}. Move the cluster group there anyway?"):
            logger.info("Leaving cluster groups where they are")
            return []
        if self.cluster_client is None:
            logger.error("No cluster client configured, cannot move cluster groups")
            return []
        try:
            return move_cluster_groups(node, node, client=self.cluster_client, group_names=list(group_names))
        except ClusterCommandError as e:
            logger.error(f"Could not list cluster groups on {node}: {e}")
            return [ClusterGroupMoveResult(name, "", "", "Unknown", "failed", error=str(e)) for name in group_names]

    def run(self, requests: Iterable[FailoverRequest],
            cluster_group_names: Iterable[str] = (CORE_CLUSTER_GROUP,)) -> FailoverBatchResult:
        requests = list(requests)
        batch = FailoverBatchResult()
        for request in requests:
            batch.outcomes.append(self.failover(request))

        relocation_targets = []
        for request in requests:
            node = node_name_of(request.target_node)
            if request.move_cluster_group and node.upper() not in [n.upper() for n in relocation_targets]:
                relocation_targets.append(node)
        for node in relocation_targets:
            moved_here = any(outcome.moved and node_name_of(outcome.target_node).upper() == node.upper()
                             for outcome in batch.outcomes)
            batch.cluster_moves.extend(self.relocate_cluster_group(node, moved_here, cluster_group_names))
        return batch


def failover_availability_groups(requests, *, executor: SqlQueryExecutor, cluster_client=None,
                                 confirm: Optional[Callable[[str], bool]] = None,
                                 sleep: Callable[[float], None] = time.sleep,
                                 settle_seconds: float = DEFAULT_SETTLE_SECONDS,
                                 cluster_group_names: Iterable[str] = (CORE_CLUSTER_GROUP,)) -> FailoverBatchResult:
    runner = FailoverRunner(executor, cluster_client=cluster_client, confirm=confirm,
                            sleep=sleep, settle_seconds=settle_seconds)
    return runner.run(requests, cluster_group_names=cluster_group_names)
