from __future__ import annotations

from datetime import timedelta

import pytest

from ag_errors import TopologyValidationError
from ag_models import (
    AvailabilityGroupTopology,
    DatabaseReplicationState,
    HealthState,
    OperationalState,
    SynchronizationState,
    require_topology,
)
from conftest import make_topology


def _state(queue, rate) -> DatabaseReplicationState:
    return DatabaseReplicationState(
        availability_group="AG1",
        database_name="Sales",
        replica_server_name="C",
        synchronization_state=SynchronizationState.SYNCHRONIZING,
        synchronization_health=HealthState.HEALTHY,
        is_failover_ready=False,
        is_suspended=False,
        log_send_queue_size_kb=queue,
        log_send_rate_kb_per_sec=rate,
    )


def test_every_replica_is_in_exactly_one_commit_partition(topology) -> None:
    for replica in topology.replicas:
        in_sync = replica in topology.synchronous_replicas
        in_async = replica in topology.asynchronous_replicas
        assert in_sync != in_async


def test_overlapping_partitions_are_rejected() -> None:
    with pytest.raises(ValueError):
        make_topology(synchronous_replicas=["A", "B", "C"], asynchronous_replicas=["C"])


def test_partitions_must_cover_replicas() -> None:
    with pytest.raises(ValueError):
        make_topology(synchronous_replicas=["A"], asynchronous_replicas=["C"])


def test_names_are_sorted_and_deduplicated() -> None:
    topology = make_topology(databases=["Sales", "inventory", "SALES"], listener_dns_names=[])

    assert topology.databases == ("inventory", "Sales")
    assert topology.has_listener is False
    assert topology.connect_target == "A"


def test_membership_checks_ignore_case(topology) -> None:
    assert topology.is_replica("c")
    assert topology.is_asynchronous("c")
    assert topology.canonical_replica_name("b") == "B"
    assert topology.is_primary("a")
    assert not topology.is_replica("D")


def test_catchup_time_divides_queue_by_rate() -> None:
    assert _state(1200.0, 100.0).estimated_catchup_time == timedelta(seconds=12)


@pytest.mark.parametrize("queue, rate", [(500.0, 0.0), (500.0, None), (None, 10.0)])
def test_catchup_time_is_unbounded_without_rate(queue, rate) -> None:
    state = _state(queue, rate)

    assert state.estimated_catchup_time is None
    assert state.to_dict()["estimated_catchup_time"] == "unbounded"


def test_operational_state_collapses_to_online_or_passive() -> None:
    assert OperationalState.parse("ONLINE") is OperationalState.ONLINE
    for value in ("OFFLINE", "PENDING_FAILOVER", "FAILED_NO_QUORUM", None):
        assert OperationalState.parse(value) is OperationalState.PASSIVE


def test_health_state_parses_descriptions() -> None:
    assert HealthState.parse("PARTIALLY_HEALTHY") is HealthState.PARTIALLY_HEALTHY
    assert HealthState.parse("healthy") is HealthState.HEALTHY
    assert HealthState.parse(None) is HealthState.NOT_HEALTHY


def test_require_topology_accepts_exported_dict(topology) -> None:
    restored = require_topology(topology.to_dict())

    assert restored == topology
    assert isinstance(AvailabilityGroupTopology.from_dict(topology.to_dict()), AvailabilityGroupTopology)


def test_require_topology_rejects_incomplete_input() -> None:
    with pytest.raises(TopologyValidationError) as excinfo:
        require_topology({"name": "AG1", "replicas": ["A"]})

    assert excinfo.value.missing_fields == ["group_id", "primary_replica"]


def test_require_topology_rejects_other_objects() -> None:
    with pytest.raises(TopologyValidationError):
        require_topology(["AG1"])
