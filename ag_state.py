"""
Replica and database synchronization state for an Availability Group
Both readers go through the AG listener so they follow the current primary
"""
import logging
from typing import Iterable, List, Optional

from ag_models import (
    AvailabilityMode,
    ConnectionState,
    DatabaseReplicationState,
    FailoverMode,
    HealthState,
    OperationalState,
    ReplicaRole,
    ReplicaState,
    SynchronizationState,
    require_topology,
)
from ag_queries import get_query
from sql_query_executor import SqlQueryExecutor

logger = logging.getLogger(__name__)


def _number(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _state_target(topology):
    if not topology.has_listener:
        logger.warning(f"{topology.name} has no listener configured, reading state from primary {topology.primary_replica}")
    return topology.connect_target


def get_replica_state(topology, *, executor: SqlQueryExecutor) -> List[ReplicaState]:
    topology = require_topology(topology)
    target = _state_target(topology)
    result = executor.execute([target], get_query('ag_replica_states'), params=(topology.group_id,),
                              multi_subnet_failover=topology.has_listener)[0]
    if not result.ok:
        logger.error(f"Could not read replica state of {topology.name}: {result.error}")
        return []

    states = []
    for row in result.rows:
        states.append(ReplicaState(
            availability_group=topology.name,
            replica_server_name=row['ReplicaServerName'],
            role=ReplicaRole.parse(row['Role']),
            availability_mode=AvailabilityMode.parse(row['AvailabilityMode']),
            failover_mode=FailoverMode.parse(row['FailoverMode']),
            operational_state=OperationalState.parse(row['OperationalState']),
            connection_state=ConnectionState.parse(row['ConnectionState']),
            synchronization_health=HealthState.parse(row['SynchronizationHealth']),
        ))
    return states


def get_database_replication_state(topology, *, executor: SqlQueryExecutor,
                                   databases: Optional[Iterable[str]] = None) -> List[DatabaseReplicationState]:
    """
    Per-replica synchronization state of each AG database (or the given subset).
    Each database's group_database_id is looked up first and used to join the
    replica state, replica and cluster state views.
    """
    topology = require_topology(topology)
    target = _state_target(topology)
    selected = list(databases) if databases is not None else list(topology.databases)

    states = []
    for database_name in selected:
        lookup = executor.execute([target], get_query('ag_group_database_id'),
                                  params=(database_name, topology.group_id),
                                  multi_subnet_failover=topology.has_listener)[0]
        if not lookup.ok:
            logger.error(f"Could not resolve {database_name} in {topology.name}: {lookup.error}")
            continue
        if not lookup.rows:
            logger.warning(f"{database_name} is not part of availability group {topology.name}")
            continue
        group_database_id = str(lookup.rows[0]['GroupDatabaseId'])

        result = executor.execute([target], get_query('ag_database_replica_states'),
                                  params=(group_database_id,),
                                  multi_subnet_failover=topology.has_listener)[0]
        if not result.ok:
            logger.error(f"Could not read state of {database_name}: {result.error}")
            continue

        for row in result.rows:
            states.append(DatabaseReplicationState(
                availability_group=topology.name,
                database_name=database_name,
                replica_server_name=row['ReplicaServerName'],
                synchronization_state=SynchronizationState.parse(row['SynchronizationState']),
                synchronization_health=HealthState.parse(row['SynchronizationHealth']),
                is_failover_ready=bool(row['IsFailoverReady']),
                is_suspended=bool(row['IsSuspended']),
                log_send_queue_size_kb=_number(row.get('LogSendQueueSizeKb')),
                log_send_rate_kb_per_sec=_number(row.get('LogSendRateKbPerSec')),
            ))
    return states


def replica_health(states: Iterable[ReplicaState], replica_name: str) -> Optional[HealthState]:
    wanted = replica_name.strip().upper()
    for state in states:
        if state.replica_server_name.upper() == wanted:
            return state.synchronization_health
    return None
