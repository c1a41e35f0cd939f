"""
Transaction log shrinking for standalone databases and Availability Group databases
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from ag_errors import LogFileResolutionError
from ag_models import require_topology
from ag_queries import get_query, shrink_file_statement
from sql_query_executor import SqlQueryExecutor

logger = logging.getLogger(__name__)


@dataclass
class ShrinkResult:
    server: str
    database: str
    logical_name: Optional[str] = None
    target_size_mb: int = 0
    size_before_mb: Optional[float] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            'server': self.server,
            'database': self.database,
            'logical_name': self.logical_name,
            'target_size_mb': self.target_size_mb,
            'size_before_mb': self.size_before_mb,
            'error': self.error,
        }


def resolve_log_file(server: str, database: str, *, executor: SqlQueryExecutor,
                     file_name: Optional[str] = None, multi_subnet_failover: bool = False):
    """Return (logical_name, size_mb) of the database's log file; never guesses between several"""
    result = executor.execute([server], get_query('log_file_names'), database=database,
                              multi_subnet_failover=multi_subnet_failover, suppress_server_column=True)[0]
    if not result.ok:
        raise LogFileResolutionError(f"Cannot read log files of {database} on {server}: {result.error}")

    files = [(row['LogicalName'], row.get('SizeMB')) for row in result.rows]
    if file_name:
        for name, size in files:
            if name.upper() == file_name.upper():
                return name, size
        raise LogFileResolutionError(f"{database} on {server} has no log file named {file_name}")
    if not files:
        raise LogFileResolutionError(f"No log file found for {database} on {server}")
    if len(files) > 1:
        names = ", ".join(name for name, _ in files)
        raise LogFileResolutionError(f"{database} on {server} has several log files ({names}); name one explicitly")
    return files[0]


def shrink_log_file(server: str, database: str, target_size_mb: int = 0, *, executor: SqlQueryExecutor,
                    file_name: Optional[str] = None, multi_subnet_failover: bool = False) -> ShrinkResult:
    """
    Shrink a database's log file to target_size_mb.
    Raises LogFileResolutionError when the logical file name cannot be determined.
    """
    if target_size_mb < 0:
        raise ValueError("Target size must not be negative")
    logical_name, size = resolve_log_file(server, database, executor=executor, file_name=file_name,
                                          multi_subnet_failover=multi_subnet_failover)
    shrink = ShrinkResult(server=server, database=database, logical_name=logical_name,
                          target_size_mb=target_size_mb,
                          size_before_mb=float(size) if size is not None else None)

    logger.info(f"Shrinking {database}.{logical_name} on {server} to {target_size_mb} MB")
    result = executor.execute([server], shrink_file_statement(logical_name, target_size_mb), database=database,
                              multi_subnet_failover=multi_subnet_failover, suppress_server_column=True)[0]
    if not result.ok:
        shrink.error = result.error
    elif result.errors:
        shrink.error = "; ".join(message.text for message in result.errors)
    return shrink


def shrink_ag_logs(topology, target_size_mb: int = 0, *, executor: SqlQueryExecutor) -> List[ShrinkResult]:
    """Shrink the log of every AG database on the current primary, one database at a time"""
    topology = require_topology(topology)
    results = []
    for database_name in topology.databases:
        try:
            results.append(shrink_log_file(topology.connect_target, database_name, target_size_mb,
                                           executor=executor, multi_subnet_failover=topology.has_listener))
        except LogFileResolutionError as e:
            logger.error(str(e))
            results.append(ShrinkResult(server=topology.connect_target, database=database_name,
                                        target_size_mb=target_size_mb, error=str(e)))
    return results
