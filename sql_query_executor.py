"""
Generic query runner for one or more SQL Server instances
Opens one connection per server, returns the first result table of each and
collects server messages; a failing server never stops the rest of the batch
"""
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from ag_settings import Settings, load_settings

logger = logging.getLogger(__name__)

SERVER_COLUMN = "ServerInstance"

_CODE_PATTERN = re.compile(r"\((\d+)\)")
_LINE_PATTERN = re.compile(r"\bline (\d+)", re.IGNORECASE)
_DRIVER_PREFIX = re.compile(r"^(\[[^\]]*\]\s*)+")


@dataclass(frozen=True)
class SqlCredential:
    username: str
    password: str


@dataclass(frozen=True)
class QueryMessage:
    code: int
    text: str
    line: Optional[int] = None

    @property
    def is_error(self) -> bool:
        return self.code != 0


@dataclass
class QueryResult:
    server: str
    rows: List[Dict[str, Any]] = field(default_factory=list)
    messages: List[QueryMessage] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def no_records(self) -> bool:
        return self.ok and not self.rows

    @property
    def errors(self) -> List[QueryMessage]:
        return [message for message in self.messages if message.is_error]


def build_connection_string(server: str, database: str, settings: Settings,
                            credential: Optional[SqlCredential] = None,
                            multi_subnet_failover: bool = False) -> str:
    address = f"{server},{settings.port}" if settings.port and "," not in server else server
    parts = [
        f"DRIVER={{{settings.odbc_driver}}}",
        f"SERVER={address}",
        f"DATABASE={database}",
    ]
    if credential is None and not settings.uses_integrated_auth:
        credential = SqlCredential(settings.username, settings.password)
    if credential is not None:
        parts.append(f"UID={credential.username}")
        parts.append(f"PWD={{{credential.password.replace('}', '}}')}}}")
    else:
        parts.append("Trusted_Connection=yes")
    if settings.trust_server_certificate:
        parts.append("TrustServerCertificate=yes")
    if multi_subnet_failover:
        parts.append("MultiSubnetFailover=Yes")
    parts.append("APP=ag-admin")
    return ";".join(parts) + ";"


def pyodbc_connect(connection_string: str, timeout: int):
    # imported here so the module loads on hosts without an ODBC driver manager
    import pyodbc
    return pyodbc.connect(connection_string, timeout=timeout, autocommit=True)


def parse_message(raw) -> QueryMessage:
    """Turn a pyodbc message tuple ('[01000] (50000)', '[Microsoft]...text') into a QueryMessage"""
    if isinstance(raw, (tuple, list)) and len(raw) >= 2:
        header, text = str(raw[0]), str(raw[1])
    else:
        header, text = "", str(raw)
    match = _CODE_PATTERN.search(header)
    code = int(match.group(1)) if match else 0
    text = _DRIVER_PREFIX.sub("", text).strip()
    line_match = _LINE_PATTERN.search(text)
    return QueryMessage(code=code, text=text, line=int(line_match.group(1)) if line_match else None)


def parse_error(exc: Exception) -> QueryMessage:
    """pyodbc.Error carries (sqlstate, '... text (208) (SQLExecDirectW)')"""
    text = str(exc.args[-1]) if getattr(exc, "args", None) else str(exc)
    codes = _CODE_PATTERN.findall(text)
    code = int(codes[0]) if codes else -1
    text = re.sub(r"\s*\(\d+\)\s*\(SQL\w+\)\s*$", "", text)
    text = _DRIVER_PREFIX.sub("", text).strip()
    line_match = _LINE_PATTERN.search(text)
    return QueryMessage(code=code or -1, text=text, line=int(line_match.group(1)) if line_match else None)


def flatten_rows(results: Sequence[QueryResult]) -> List[Dict[str, Any]]:
    rows = []
    for result in results:
        rows.extend(result.rows)
    return rows


class SqlQueryExecutor:
    def __init__(self, settings: Optional[Settings] = None, credential: Optional[SqlCredential] = None,
                 connect: Optional[Callable] = None, max_workers: int = 1,
                 messages_to_output: bool = False):
        self.settings = settings or load_settings()
        self.credential = credential
        self.connect = connect or pyodbc_connect
        self.max_workers = max(1, int(max_workers))
        self.messages_to_output = messages_to_output

    def execute(self, servers, query: str, database: Optional[str] = None, params: Sequence = (),
                multi_subnet_failover: bool = False, query_timeout: Optional[int] = None,
                suppress_server_column: bool = False) -> List[QueryResult]:
        """
        Run query against every server and return one QueryResult per server, in input order.
        Servers are visited one after another unless max_workers > 1.
        """
        if not query or not str(query).strip():
            raise ValueError("A query is required")
        if isinstance(servers, str):
            servers = [servers]
        # one result per entry, blank names included
        servers = [str(server or "").strip() for server in servers]

        def run(server):
            return self.execute_one(server, query, database=database, params=params,
                                    multi_subnet_failover=multi_subnet_failover,
                                    query_timeout=query_timeout,
                                    suppress_server_column=suppress_server_column)

        if self.max_workers == 1 or len(servers) < 2:
            return [run(server) for server in servers]
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(servers))) as pool:
            return list(pool.map(run, servers))

    def execute_one(self, server: str, query: str, database: Optional[str] = None, params: Sequence = (),
                    multi_subnet_failover: bool = False, query_timeout: Optional[int] = None,
                    suppress_server_column: bool = False) -> QueryResult:
        result = QueryResult(server=server)
        if not server or not server.strip():
            result.error = "Server name is empty"
            logger.error(result.error)
            return result
        connection_string = build_connection_string(
            server, database or self.settings.database, self.settings,
            credential=self.credential, multi_subnet_failover=multi_subnet_failover,
        )

        try:
            connection = self.connect(connection_string, self.settings.connect_timeout)
        except Exception as e:
            result.error = f"Could not connect to {server}: {parse_error(e).text}"
            logger.error(result.error)
            return result

        try:
            timeout = self.settings.query_timeout if query_timeout is None else query_timeout
            if timeout:
                connection.timeout = timeout
            cursor = connection.cursor()
            try:
                if params:
                    cursor.execute(query, *params)
                else:
                    cursor.execute(query)
                rows = self._read_first_table(cursor, result)
            finally:
                cursor.close()
        except Exception as e:
            message = parse_error(e)
            result.messages.append(message)
            result.error = f"Query failed on {server}: {message.text}"
            self._report_message(server, message)
            return result
        finally:
            connection.close()

        if not suppress_server_column:
            for row in rows:
                row[SERVER_COLUMN] = server
        result.rows = rows
        if not rows:
            logger.info(f"{server}: no records returned")
        return result

    def _read_first_table(self, cursor, result: QueryResult) -> List[Dict[str, Any]]:
        rows = None
        while True:
            for raw in getattr(cursor, "messages", None) or []:
                message = parse_message(raw)
                result.messages.append(message)
                self._report_message(result.server, message)
            if rows is None and cursor.description is not None:
                columns = [column[0] for column in cursor.description]
                rows = [dict(zip(columns, row)) for row in cursor.fetchall()]
            if not cursor.nextset():
                break
        return rows or []

    def _report_message(self, server: str, message: QueryMessage):
        if not message.is_error:
            if self.messages_to_output:
                print(message.text)
            else:
                logger.info(f"{server}: {message.text}")
            return
        location = f"line {message.line}" if message.line is not None else "line ?"
        logger.error(f"{server}: error {message.code} at {location}: {message.text}")


def invoke_sql_query(servers, query: str, database: str = "master", params: Sequence = (), *,
                     multi_subnet_failover: bool = False, query_timeout: Optional[int] = None,
                     credential: Optional[SqlCredential] = None, suppress_server_column: bool = False,
                     messages_to_output: bool = False, max_workers: int = 1,
                     settings: Optional[Settings] = None, connect: Optional[Callable] = None) -> List[QueryResult]:
    executor = SqlQueryExecutor(settings=settings, credential=credential, connect=connect,
                                max_workers=max_workers, messages_to_output=messages_to_output)
    return executor.execute(servers, query, database=database, params=params,
                            multi_subnet_failover=multi_subnet_failover, query_timeout=query_timeout,
                            suppress_server_column=suppress_server_column)
