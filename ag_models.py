"""
Snapshot records for Availability Groups, their replicas and their databases
Every record is built fresh from a query and never mutated afterwards
"""
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Mapping, Optional, Tuple

from ag_errors import TopologyValidationError


class HealthState(Enum):
    HEALTHY = "HEALTHY"
    PARTIALLY_HEALTHY = "PARTIALLY_HEALTHY"
    NOT_HEALTHY = "NOT_HEALTHY"

    @classmethod
    def parse(cls, value) -> "HealthState":
        # anything the server cannot vouch for is treated as unhealthy
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().upper().replace(" ", "_")
        try:
            return cls(text)
        except ValueError:
            return cls.NOT_HEALTHY


class ReplicaRole(Enum):
    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"

    @classmethod
    def parse(cls, value) -> "ReplicaRole":
        return cls.PRIMARY if str(value or "").strip().upper() == "PRIMARY" else cls.SECONDARY


class AvailabilityMode(Enum):
    SYNCHRONOUS_COMMIT = "SYNCHRONOUS_COMMIT"
    ASYNCHRONOUS_COMMIT = "ASYNCHRONOUS_COMMIT"

    @classmethod
    def parse(cls, value) -> "AvailabilityMode":
        text = str(value or "").strip().upper()
        if text.startswith("SYNCHRONOUS"):
            return cls.SYNCHRONOUS_COMMIT
        return cls.ASYNCHRONOUS_COMMIT


class FailoverMode(Enum):
    AUTOMATIC = "AUTOMATIC"
    MANUAL = "MANUAL"

    @classmethod
    def parse(cls, value) -> "FailoverMode":
        return cls.AUTOMATIC if str(value or "").strip().upper() == "AUTOMATIC" else cls.MANUAL


class OperationalState(Enum):
    ONLINE = "ONLINE"
    PASSIVE = "PASSIVE"

    @classmethod
    def parse(cls, value) -> "OperationalState":
        # sys.dm_hadr_availability_replica_states only reports ONLINE locally
        return cls.ONLINE if str(value or "").strip().upper() == "ONLINE" else cls.PASSIVE


class ConnectionState(Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"

    @classmethod
    def parse(cls, value) -> "ConnectionState":
        return cls.CONNECTED if str(value or "").strip().upper() == "CONNECTED" else cls.DISCONNECTED


class SynchronizationState(Enum):
    NOT_SYNCHRONIZING = "NOT_SYNCHRONIZING"
    SYNCHRONIZING = "SYNCHRONIZING"
    SYNCHRONIZED = "SYNCHRONIZED"
    REVERTING = "REVERTING"
    INITIALIZING = "INITIALIZING"

    @classmethod
    def parse(cls, value) -> "SynchronizationState":
        text = str(value or "").strip().upper().replace(" ", "_")
        try:
            return cls(text)
        except ValueError:
            return cls.NOT_SYNCHRONIZING


def _sorted_names(values) -> Tuple[str, ...]:
    seen = {}
    for value in values or ():
        if value is None:
            continue
        name = str(value).strip()
        if name:
            seen.setdefault(name.upper(), name)
    return tuple(sorted(seen.values(), key=str.upper))


def _contains(names, candidate) -> bool:
    wanted = str(candidate or "").strip().upper()
    return any(name.upper() == wanted for name in names)


@dataclass(frozen=True)
class AvailabilityGroupTopology:
    name: str
    group_id: str
    primary_replica: str
    replicas: Tuple[str, ...]
    synchronous_replicas: Tuple[str, ...]
    asynchronous_replicas: Tuple[str, ...]
    databases: Tuple[str, ...] = ()
    listener_dns_names: Tuple[str, ...] = ()
    health_state: HealthState = HealthState.NOT_HEALTHY

    def __post_init__(self):
        object.__setattr__(self, "replicas", _sorted_names(self.replicas))
        object.__setattr__(self, "synchronous_replicas", _sorted_names(self.synchronous_replicas))
        object.__setattr__(self, "asynchronous_replicas", _sorted_names(self.asynchronous_replicas))
        object.__setattr__(self, "databases", _sorted_names(self.databases))
        object.__setattr__(self, "listener_dns_names", _sorted_names(self.listener_dns_names))
        object.__setattr__(self, "health_state", HealthState.parse(self.health_state))

        sync = {name.upper() for name in self.synchronous_replicas}
        async_ = {name.upper() for name in self.asynchronous_replicas}
        members = {name.upper() for name in self.replicas}
        if sync & async_:
            raise ValueError(f"Replicas cannot be both synchronous and asynchronous: {sorted(sync & async_)}")
        if sync | async_ != members:
            raise ValueError(f"Commit-mode partitions of {self.name} do not cover its replica list")

    @property
    def has_listener(self) -> bool:
        return bool(self.listener_dns_names)

    @property
    def connect_target(self) -> str:
        """Listener name when one exists so reads follow the primary, else the primary itself"""
        return self.listener_dns_names[0] if self.listener_dns_names else self.primary_replica

    def is_replica(self, server) -> bool:
        return _contains(self.replicas, server)

    def is_primary(self, server) -> bool:
        return str(server or "").strip().upper() == self.primary_replica.upper()

    def is_asynchronous(self, server) -> bool:
        return _contains(self.asynchronous_replicas, server)

    def canonical_replica_name(self, server) -> Optional[str]:
        wanted = str(server or "").strip().upper()
        for name in self.replicas:
            if name.upper() == wanted:
                return name
        return None

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'group_id': self.group_id,
            'primary_replica': self.primary_replica,
            'replicas': list(self.replicas),
            'synchronous_replicas': list(self.synchronous_replicas),
            'asynchronous_replicas': list(self.asynchronous_replicas),
            'databases': list(self.databases),
            'listener_dns_names': list(self.listener_dns_names),
            'health_state': self.health_state.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AvailabilityGroupTopology":
        return require_topology(data)


@dataclass(frozen=True)
class ReplicaState:
    availability_group: str
    replica_server_name: str
    role: ReplicaRole
    availability_mode: AvailabilityMode
    failover_mode: FailoverMode
    operational_state: OperationalState
    connection_state: ConnectionState
    synchronization_health: HealthState

    def to_dict(self) -> dict:
        return {
            'availability_group': self.availability_group,
            'replica_server_name': self.replica_server_name,
            'role': self.role.value,
            'availability_mode': self.availability_mode.value,
            'failover_mode': self.failover_mode.value,
            'operational_state': self.operational_state.value,
            'connection_state': self.connection_state.value,
            'synchronization_health': self.synchronization_health.value,
        }


@dataclass(frozen=True)
class DatabaseReplicationState:
    availability_group: str
    database_name: str
    replica_server_name: str
    synchronization_state: SynchronizationState
    synchronization_health: HealthState
    is_failover_ready: bool
    is_suspended: bool
    log_send_queue_size_kb: Optional[float] = None
    log_send_rate_kb_per_sec: Optional[float] = None

    @property
    def estimated_catchup_time(self) -> Optional[timedelta]:
        """Queue size over send rate; None means unbounded (no rate or no data)"""
        queue = self.log_send_queue_size_kb
        rate = self.log_send_rate_kb_per_sec
        if queue is None or rate is None or rate <= 0:
            return None
        return timedelta(seconds=float(queue) / float(rate))

    def to_dict(self) -> dict:
        catchup = self.estimated_catchup_time
        return {
            'availability_group': self.availability_group,
            'database_name': self.database_name,
            'replica_server_name': self.replica_server_name,
            'synchronization_state': self.synchronization_state.value,
            'synchronization_health': self.synchronization_health.value,
            'is_failover_ready': self.is_failover_ready,
            'is_suspended': self.is_suspended,
            'log_send_queue_size_kb': self.log_send_queue_size_kb,
            'log_send_rate_kb_per_sec': self.log_send_rate_kb_per_sec,
            'estimated_catchup_time': str(catchup) if catchup is not None else 'unbounded',
        }


@dataclass(frozen=True)
class FailoverRequest:
    topology: AvailabilityGroupTopology
    target_node: str
    force: bool = False
    fix_quorum: bool = False
    move_cluster_group: bool = False


REQUIRED_TOPOLOGY_FIELDS = ('name', 'group_id', 'primary_replica', 'replicas')


def require_topology(obj) -> AvailabilityGroupTopology:
    """
    Validate an object handed to a downstream stage and return it as a topology record.
    Raises TopologyValidationError when required fields are missing; callers must stop.
    """
    if isinstance(obj, AvailabilityGroupTopology):
        return obj
    if not isinstance(obj, Mapping):
        raise TopologyValidationError(REQUIRED_TOPOLOGY_FIELDS, source=obj)

    missing = [name for name in REQUIRED_TOPOLOGY_FIELDS if not obj.get(name)]
    if missing:
        raise TopologyValidationError(missing, source=obj)

    replicas = list(obj['replicas'])
    sync = list(obj.get('synchronous_replicas') or ())
    async_ = obj.get('asynchronous_replicas')
    if async_ is None:
        async_ = [name for name in replicas if not _contains(sync, name)]
    try:
        return AvailabilityGroupTopology(
            name=obj['name'],
            group_id=str(obj['group_id']),
            primary_replica=obj['primary_replica'],
            replicas=replicas,
            synchronous_replicas=sync,
            asynchronous_replicas=list(async_),
            databases=list(obj.get('databases') or ()),
            listener_dns_names=list(obj.get('listener_dns_names') or ()),
            health_state=obj.get('health_state'),
        )
    except ValueError as e:
        raise TopologyValidationError(['synchronous_replicas', 'asynchronous_replicas'], source=obj) from e
