from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

import pytest

from ag_errors import ClusterCommandError
from ag_models import AvailabilityGroupTopology, HealthState
from ag_queries import QUERIES
from ag_settings import Settings
from cluster_groups import ClusterGroup, ClusterNode
from sql_query_executor import SqlQueryExecutor

_TEMPLATE_NAMES = {text: name for name, text in QUERIES.items()}


@dataclass
class FakeResponse:
    rows: list[dict[str, Any]] | None = None
    messages: list[tuple[str, str]] = field(default_factory=list)
    error: Exception | None = None


@dataclass
class Call:
    server: str
    database: str
    query: str
    params: tuple
    connection_string: str


class FakeCursor:
    def __init__(self, connection: "FakeConnection") -> None:
        self.connection = connection
        self.description = None
        self.messages: list[tuple[str, str]] = []
        self._rows: list[tuple] = []

    def execute(self, query, *params):
        backend = self.connection.backend
        backend.calls.append(Call(self.connection.server, self.connection.database, query, params,
                                  self.connection.connection_string))
        response = backend.respond(self.connection.server, query)
        self.messages = list(response.messages)
        if response.error is not None:
            raise response.error
        if response.rows is None:
            self.description = None
            self._rows = []
            return self
        columns = list(response.rows[0].keys()) if response.rows else ["Column1"]
        self.description = [(column, str, None, None, None, None, True) for column in columns]
        self._rows = [tuple(row[column] for column in columns) for row in response.rows]
        return self

    def fetchall(self):
        return list(self._rows)

    def nextset(self):
        return False

    def close(self):
        pass


class FakeConnection:
    def __init__(self, backend: "FakeSqlBackend", server: str, database: str, connection_string: str) -> None:
        self.backend = backend
        self.server = server
        self.database = database
        self.connection_string = connection_string
        self.timeout = 0
        self.closed = False

    def cursor(self):
        return FakeCursor(self)

    def close(self):
        self.closed = True


class FakeSqlBackend:
    """Stands in for pyodbc.connect; responses are keyed by server and query template name or statement text"""

    def __init__(self) -> None:
        self.responses: dict[tuple[str, str], FakeResponse] = {}
        self.unreachable: set[str] = set()
        self.calls: list[Call] = []
        self.connections: list[FakeConnection] = []

    def add(self, server: str, key: str, rows=None, messages=None, error=None) -> None:
        self.responses[(server.upper(), key)] = FakeResponse(rows=rows, messages=messages or [], error=error)

    def respond(self, server: str, query: str) -> FakeResponse:
        name = _TEMPLATE_NAMES.get(query)
        for (known_server, key), response in self.responses.items():
            if known_server != server.upper():
                continue
            if key == name or (name is None and key in query):
                return response
        return FakeResponse(rows=None if name is None else [])

    def connect(self, connection_string: str, timeout: int):
        server = re.search(r"SERVER=([^;]+);", connection_string).group(1)
        database = re.search(r"DATABASE=([^;]+);", connection_string).group(1)
        if server.upper() in self.unreachable:
            raise Exception("08001", f"[08001] [Microsoft][ODBC Driver 17 for SQL Server]TCP Provider: "
                                     f"No such host is known: {server} (11001) (SQLDriverConnect)")
        connection = FakeConnection(self, server, database, connection_string)
        self.connections.append(connection)
        return connection

    def statements(self, server: str | None = None) -> list[str]:
        return [call.query for call in self.calls
                if _TEMPLATE_NAMES.get(call.query) is None and (server is None or call.server.upper() == server.upper())]

    def template_calls(self, name: str) -> list[Call]:
        return [call for call in self.calls if _TEMPLATE_NAMES.get(call.query) == name]


@pytest.fixture
def backend() -> FakeSqlBackend:
    return FakeSqlBackend()


@pytest.fixture
def executor(backend: FakeSqlBackend) -> SqlQueryExecutor:
    return SqlQueryExecutor(settings=Settings(), connect=backend.connect)


def make_topology(**overrides) -> AvailabilityGroupTopology:
    values = dict(
        name="AG1",
        group_id="6f1d2c3b-0000-4000-8000-000000000001",
        primary_replica="A",
        replicas=["A", "B", "C"],
        synchronous_replicas=["A", "B"],
        asynchronous_replicas=["C"],
        databases=["Sales", "Inventory"],
        listener_dns_names=["ag1-listener"],
        health_state=HealthState.HEALTHY,
    )
    values.update(overrides)
    return AvailabilityGroupTopology(**values)


@pytest.fixture
def topology() -> AvailabilityGroupTopology:
    return make_topology()


class FakeClusterClient:
    def __init__(self, nodes=None, groups=None, failing_groups=()) -> None:
        self.nodes = [ClusterNode(name, "Up", 1) for name in (nodes or ["A", "B", "C"])]
        self.groups = groups if groups is not None else [ClusterGroup("Cluster Group", "A", "Online")]
        self.failing_groups = set(failing_groups)
        self.calls: list[tuple] = []

    def get_cluster_nodes(self, cluster):
        self.calls.append(("get_cluster_nodes", cluster))
        return list(self.nodes)

    def get_cluster_groups(self, cluster):
        self.calls.append(("get_cluster_groups", cluster))
        return list(self.groups)

    def move_cluster_group(self, cluster, group, node):
        self.calls.append(("move_cluster_group", cluster, group, node))
        if group in self.failing_groups:
            raise ClusterCommandError("Move-ClusterGroup", 1, f"{group} is locked")
        return ClusterGroup(group, node, "Online")

    def set_node_weight(self, cluster, node, weight):
        self.calls.append(("set_node_weight", cluster, node, weight))

    def stop_cluster_node(self, cluster, node):
        self.calls.append(("stop_cluster_node", cluster, node))

    def start_cluster_node(self, cluster, node, force_quorum=False):
        self.calls.append(("start_cluster_node", cluster, node, force_quorum))


@pytest.fixture
def cluster_client() -> FakeClusterClient:
    return FakeClusterClient()
