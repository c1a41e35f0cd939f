from __future__ import annotations

from datetime import timedelta

from ag_models import (
    AvailabilityMode,
    ConnectionState,
    FailoverMode,
    HealthState,
    OperationalState,
    ReplicaRole,
    SynchronizationState,
)
from ag_state import get_database_replication_state, get_replica_state, replica_health
from conftest import make_topology

SALES_DB_ID = "aa000000-0000-4000-8000-000000000001"


def _replica_rows():
    return [
        {"ReplicaServerName": "A", "Role": "PRIMARY", "AvailabilityMode": "SYNCHRONOUS_COMMIT",
         "FailoverMode": "AUTOMATIC", "OperationalState": "ONLINE", "ConnectionState": "CONNECTED",
         "SynchronizationHealth": "HEALTHY"},
        {"ReplicaServerName": "B", "Role": "SECONDARY", "AvailabilityMode": "SYNCHRONOUS_COMMIT",
         "FailoverMode": "AUTOMATIC", "OperationalState": None, "ConnectionState": "CONNECTED",
         "SynchronizationHealth": "HEALTHY"},
        {"ReplicaServerName": "C", "Role": "SECONDARY", "AvailabilityMode": "ASYNCHRONOUS_COMMIT",
         "FailoverMode": "MANUAL", "OperationalState": "OFFLINE", "ConnectionState": "DISCONNECTED",
         "SynchronizationHealth": "NOT_HEALTHY"},
    ]


def test_replica_state_reads_through_listener(backend, executor, topology) -> None:
    backend.add("ag1-listener", "ag_replica_states", rows=_replica_rows())

    states = get_replica_state(topology, executor=executor)

    call = backend.template_calls("ag_replica_states")[0]
    assert call.server == "ag1-listener"
    assert call.params == (topology.group_id,)
    assert "MultiSubnetFailover=Yes" in call.connection_string

    primary, sync_secondary, async_secondary = states
    assert primary.role is ReplicaRole.PRIMARY
    assert primary.operational_state is OperationalState.ONLINE
    assert sync_secondary.role is ReplicaRole.SECONDARY
    assert sync_secondary.operational_state is OperationalState.PASSIVE
    assert async_secondary.availability_mode is AvailabilityMode.ASYNCHRONOUS_COMMIT
    assert async_secondary.failover_mode is FailoverMode.MANUAL
    assert async_secondary.connection_state is ConnectionState.DISCONNECTED
    assert replica_health(states, "c") is HealthState.NOT_HEALTHY
    assert replica_health(states, "Z") is None


def test_replica_state_falls_back_to_primary_without_listener(backend, executor) -> None:
    topology = make_topology(listener_dns_names=[])
    backend.add("A", "ag_replica_states", rows=_replica_rows())

    states = get_replica_state(topology, executor=executor)

    assert len(states) == 3
    assert backend.template_calls("ag_replica_states")[0].server == "A"


def test_replica_state_unreachable_listener_returns_nothing(backend, executor, topology) -> None:
    backend.unreachable.add("AG1-LISTENER")

    assert get_replica_state(topology, executor=executor) == []


def test_database_state_looks_up_group_database_id_first(backend, executor, topology) -> None:
    backend.add("ag1-listener", "ag_group_database_id", rows=[{"GroupDatabaseId": SALES_DB_ID}])
    backend.add("ag1-listener", "ag_database_replica_states", rows=[
        {"ReplicaServerName": "A", "SynchronizationState": "SYNCHRONIZED", "SynchronizationHealth": "HEALTHY",
         "IsFailoverReady": 1, "IsSuspended": 0, "LogSendQueueSizeKb": None, "LogSendRateKbPerSec": None},
        {"ReplicaServerName": "C", "SynchronizationState": "SYNCHRONIZING", "SynchronizationHealth": "HEALTHY",
         "IsFailoverReady": 0, "IsSuspended": 0, "LogSendQueueSizeKb": 3000, "LogSendRateKbPerSec": 0},
    ])

    states = get_database_replication_state(topology, executor=executor, databases=["Sales"])

    lookup = backend.template_calls("ag_group_database_id")[0]
    assert lookup.params == ("Sales", topology.group_id)
    assert backend.template_calls("ag_database_replica_states")[0].params == (SALES_DB_ID,)

    primary, async_secondary = states
    assert primary.synchronization_state is SynchronizationState.SYNCHRONIZED
    assert primary.is_failover_ready is True
    assert async_secondary.is_failover_ready is False
    assert async_secondary.log_send_queue_size_kb == 3000.0
    assert async_secondary.estimated_catchup_time is None


def test_database_state_covers_every_ag_database_by_default(backend, executor, topology) -> None:
    backend.add("ag1-listener", "ag_group_database_id", rows=[{"GroupDatabaseId": SALES_DB_ID}])
    backend.add("ag1-listener", "ag_database_replica_states", rows=[
        {"ReplicaServerName": "B", "SynchronizationState": "SYNCHRONIZED", "SynchronizationHealth": "HEALTHY",
         "IsFailoverReady": 1, "IsSuspended": 0, "LogSendQueueSizeKb": 100, "LogSendRateKbPerSec": 50},
    ])

    states = get_database_replication_state(topology, executor=executor)

    assert [state.database_name for state in states] == ["Inventory", "Sales"]
    assert states[0].estimated_catchup_time == timedelta(seconds=2)


def test_database_missing_from_group_is_skipped(backend, executor, topology) -> None:
    backend.add("ag1-listener", "ag_group_database_id", rows=[])

    assert get_database_replication_state(topology, executor=executor, databases=["Ghost"]) == []
    assert backend.template_calls("ag_database_replica_states") == []
