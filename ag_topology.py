"""
Availability Group topology discovery
Asks a seed server (cluster node or listener) which AGs it knows about, then
reads each AG's full replica, database and listener lists from its current primary
"""
import logging
from typing import List, Optional

from ag_errors import AgTopologyError
from ag_models import AvailabilityGroupTopology, AvailabilityMode, HealthState
from ag_queries import get_query
from sql_query_executor import SqlQueryExecutor

logger = logging.getLogger(__name__)


def _short_name(server: str) -> str:
    return server.split(".")[0].split("\\")[0].split(",")[0]


def _names_match(seed: str, ag_name: str) -> bool:
    seed = seed.strip().upper()
    ag_name = ag_name.strip().upper()
    return seed == ag_name or _short_name(seed) == ag_name


class AgTopologyReader:
    def __init__(self, executor: SqlQueryExecutor):
        self.executor = executor

    def _query(self, server, name, params=(), multi_subnet_failover=False):
        result = self.executor.execute([server], get_query(name), params=params,
                                       multi_subnet_failover=multi_subnet_failover)[0]
        if not result.ok:
            raise AgTopologyError(result.error)
        return result.rows

    def resolve_groups(self, seed: str):
        """Return (ag_name, primary_replica) pairs visible from the seed, narrowed when the seed names an AG"""
        # a seed may be a listener, and the driver accepts the flag for a plain node too
        rows = self._query(seed, 'ag_names_and_primaries', multi_subnet_failover=True)
        groups = [(row['AvailabilityGroup'], row['PrimaryReplica']) for row in rows]
        matching = [group for group in groups if _names_match(seed, group[0])]
        if matching:
            logger.debug(f"{seed} identifies availability group {matching[0][0]}")
            return matching
        return groups

    def read_group(self, ag_name: str, primary_replica: str) -> AvailabilityGroupTopology:
        # replica and listener metadata is only guaranteed current on the primary
        state_rows = self._query(primary_replica, 'ag_group_state', (ag_name,))
        if not state_rows:
            raise AgTopologyError(f"{primary_replica} does not host availability group {ag_name}")
        state = state_rows[0]
        group_id = str(state['GroupId'])
        primary = state.get('PrimaryReplica') or primary_replica

        replica_rows = self._query(primary, 'ag_replicas', (group_id,))
        synchronous, asynchronous = [], []
        for row in replica_rows:
            mode = AvailabilityMode.parse(row['AvailabilityMode'])
            if mode is AvailabilityMode.SYNCHRONOUS_COMMIT:
                synchronous.append(row['ReplicaServerName'])
            else:
                asynchronous.append(row['ReplicaServerName'])

        databases = [row['DatabaseName'] for row in self._query(primary, 'ag_databases', (group_id,))]
        listeners = [row['DnsName'] for row in self._query(primary, 'ag_listeners', (group_id,))]

        return AvailabilityGroupTopology(
            name=ag_name,
            group_id=group_id,
            primary_replica=primary,
            replicas=synchronous + asynchronous,
            synchronous_replicas=synchronous,
            asynchronous_replicas=asynchronous,
            databases=databases,
            listener_dns_names=listeners,
            health_state=HealthState.parse(state['HealthState']),
        )

    def read(self, seeds) -> List[AvailabilityGroupTopology]:
        if isinstance(seeds, str):
            seeds = [seeds]

        topologies = []
        seen = set()
        for seed in seeds:
            try:
                groups = self.resolve_groups(seed)
            except AgTopologyError as e:
                logger.error(f"Skipping {seed}: {e}")
                continue
            if not groups:
                logger.warning(f"{seed} is not part of any availability group")

            for ag_name, primary in groups:
                if ag_name.upper() in seen:
                    continue
                if not primary:
                    logger.error(f"Skipping {ag_name}: {seed} does not report a primary replica")
                    continue
                try:
                    topology = self.read_group(ag_name, primary)
                except AgTopologyError as e:
                    logger.error(f"Skipping {ag_name}: {e}")
                    continue
                seen.add(ag_name.upper())
                topologies.append(topology)
        return topologies


def get_availability_group_topology(seeds, *, executor: Optional[SqlQueryExecutor] = None) -> List[AvailabilityGroupTopology]:
    return AgTopologyReader(executor or SqlQueryExecutor()).read(seeds)
