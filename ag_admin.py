"""
Command line entry point for the SQL Server Availability Group admin scripts
Usage: ag-admin <command> [options]   (python ag_admin.py --help)
"""
import argparse
import json
import logging
import sys
from typing import List, Optional

from ag_errors import AgAdminError, LogFileResolutionError, TopologyValidationError
from ag_failover import FailoverRunner
from ag_models import FailoverRequest, require_topology
from ag_reports import export_json, generate_reports
from ag_settings import configure_logging, load_settings
from ag_state import get_database_replication_state, get_replica_state
from ag_topology import get_availability_group_topology
from cluster_groups import PowerShellClusterClient, move_cluster_groups
from log_shrink import shrink_ag_logs, shrink_log_file
from sql_query_executor import SqlCredential, SqlQueryExecutor

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_HARD_STOP = 1
EXIT_ITEM_FAILED = 2


def banner(title: str):
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def prompt_confirmation(prompt: str) -> bool:
    answer = input(f"{prompt} [y/N]: ")
    return answer.strip().lower() in ("y", "yes")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SQL Server Always On Availability Group administration")
    parser.add_argument("--username", type=str, help="SQL login (overrides env; omit for integrated auth)")
    parser.add_argument("--password", type=str, help="SQL password (overrides env)")
    parser.add_argument("--driver", type=str, help="ODBC driver name (overrides env)")
    parser.add_argument("--log-level", type=str, help="Logging level (overrides env)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_source(sub):
        sub.add_argument("seeds", nargs="*", help="Cluster node or AG listener names")
        sub.add_argument("--topology-file", type=str, help="Topology JSON written by 'topology --json'")

    topology = subparsers.add_parser("topology", help="Show availability group topology")
    topology.add_argument("seeds", nargs="+", help="Cluster node or AG listener names")
    topology.add_argument("--json", dest="json_path", type=str, help="Also write the topology to this JSON file")

    replica = subparsers.add_parser("replica-state", help="Show replica role and health")
    add_source(replica)

    database = subparsers.add_parser("database-state", help="Show per-database synchronization state")
    add_source(database)
    database.add_argument("--database", action="append", help="Limit to this database (repeatable)")

    query = subparsers.add_parser("query", help="Run a query against one or more servers")
    query.add_argument("--server", action="append", required=True, help="Target server (repeatable)")
    query_text = query.add_mutually_exclusive_group(required=True)
    query_text.add_argument("--query", type=str, help="Query text")
    query_text.add_argument("--file", type=str, help="File containing the query")
    query.add_argument("--database", type=str, default="master")
    query.add_argument("--multi-subnet-failover", action="store_true")
    query.add_argument("--timeout", type=int, help="Command timeout in seconds")
    query.add_argument("--no-server-column", action="store_true", help="Do not add the ServerInstance column")
    query.add_argument("--messages-to-output", action="store_true", help="Print informational messages to stdout")
    query.add_argument("--max-workers", type=int, default=1, help="Query servers in parallel (default: one at a time)")

    failover = subparsers.add_parser("failover", help="Fail availability groups over to a replica")
    add_source(failover)
    failover.add_argument("--target", required=True, help="Replica to become primary")
    failover.add_argument("--force", action="store_true", help="Allow failover with possible data loss")
    failover.add_argument("--fix-quorum", action="store_true", help="Disaster recovery: force cluster quorum onto the target")
    failover.add_argument("--move-cluster-group", action="store_true", help="Move the core cluster group to the target")
    failover.add_argument("--yes", action="store_true", help="Answer yes to confirmation prompts")
    failover.add_argument("--settle-seconds", type=int, help="Wait after each failover command")

    move = subparsers.add_parser("move-cluster-group", help="Move cluster groups to a node")
    move.add_argument("--cluster", required=True)
    move.add_argument("--node", required=True)
    move.add_argument("--group", action="append", help="Only this group (repeatable); default all groups")

    shrink = subparsers.add_parser("shrink-log", help="Shrink transaction log files")
    add_source(shrink)
    shrink.add_argument("--server", type=str, help="Standalone server (with --database)")
    shrink.add_argument("--database", type=str)
    shrink.add_argument("--file-name", type=str, help="Logical log file name when there are several")
    shrink.add_argument("--target-size-mb", type=int, default=0)

    report = subparsers.add_parser("report", help="Write HTML sync and backup status reports")
    add_source(report)
    report.add_argument("--output-dir", type=str, help="Report directory (overrides env)")
    report.add_argument("--max-age-hours", type=int, help="Backup age that counts as failed")

    return parser


def load_topologies(args, executor) -> List:
    if getattr(args, "topology_file", None):
        with open(args.topology_file) as f:
            data = json.load(f)
        items = data if isinstance(data, list) else [data]
        return [require_topology(item) for item in items]
    if not args.seeds:
        raise TopologyValidationError(["seeds or --topology-file"])
    return get_availability_group_topology(args.seeds, executor=executor)


def print_topology(topology):
    print(f"\nAvailability Group: {topology.name} ({topology.health_state.value})")
    print(f"  Primary:      {topology.primary_replica}")
    print(f"  Synchronous:  {', '.join(topology.synchronous_replicas) or '-'}")
    print(f"  Asynchronous: {', '.join(topology.asynchronous_replicas) or '-'}")
    print(f"  Listener:     {', '.join(topology.listener_dns_names) or 'none'}")
    print(f"  Databases:    {', '.join(topology.databases) or '-'}")


def cmd_topology(args, executor, settings) -> int:
    banner("AVAILABILITY GROUP TOPOLOGY")
    topologies = get_availability_group_topology(args.seeds, executor=executor)
    for topology in topologies:
        print_topology(topology)
    if args.json_path:
        print(f"\n Topology exported to {export_json(topologies, args.json_path)}")
    return EXIT_OK if topologies else EXIT_ITEM_FAILED


def cmd_replica_state(args, executor, settings) -> int:
    banner("REPLICA STATE")
    found = False
    for topology in load_topologies(args, executor):
        print(f"\n{topology.name}")
        print(f"{'Replica':<30} {'Role':<10} {'Mode':<22} {'Failover':<10} {'Connected':<13} {'Health':<18}")
        print("-" * 105)
        for state in get_replica_state(topology, executor=executor):
            found = True
            print(f"{state.replica_server_name:<30} {state.role.value:<10} {state.availability_mode.value:<22} "
                  f"{state.failover_mode.value:<10} {state.connection_state.value:<13} "
                  f"{state.synchronization_health.value:<18}")
    return EXIT_OK if found else EXIT_ITEM_FAILED


def cmd_database_state(args, executor, settings) -> int:
    banner("DATABASE SYNCHRONIZATION STATE")
    found = False
    for topology in load_topologies(args, executor):
        print(f"\n{topology.name}")
        print(f"{'Database':<25} {'Replica':<25} {'State':<18} {'Health':<18} {'Queue KB':>10} {'Catch-up':>16}")
        print("-" * 117)
        for state in get_database_replication_state(topology, executor=executor, databases=args.database):
            found = True
            catchup = state.estimated_catchup_time
            queue = state.log_send_queue_size_kb
            print(f"{state.database_name:<25} {state.replica_server_name:<25} "
                  f"{state.synchronization_state.value:<18} {state.synchronization_health.value:<18} "
                  f"{(queue if queue is not None else '-'):>10} {(str(catchup) if catchup else 'unbounded'):>16}")
    return EXIT_OK if found else EXIT_ITEM_FAILED


def cmd_query(args, executor, settings) -> int:
    if args.file:
        with open(args.file, encoding="utf-8") as f:
            query = f.read()
    else:
        query = args.query
    executor.max_workers = max(1, args.max_workers)
    executor.messages_to_output = args.messages_to_output
    results = executor.execute(args.server, query, database=args.database,
                               multi_subnet_failover=args.multi_subnet_failover,
                               query_timeout=args.timeout, suppress_server_column=args.no_server_column)
    for result in results:
        if not result.ok:
            print(f"\n{result.server}: ERROR {result.error}")
        elif result.no_records:
            print(f"\n{result.server}: no records")
        else:
            print(f"\n{result.server}: {len(result.rows)} row(s)")
            for row in result.rows:
                print("  " + json.dumps(row, default=str))
    return EXIT_OK if all(result.ok and not result.errors for result in results) else EXIT_ITEM_FAILED


def cmd_failover(args, executor, settings) -> int:
    banner("AVAILABILITY GROUP FAILOVER")
    topologies = load_topologies(args, executor)
    if not topologies:
        print(" No availability groups found")
        return EXIT_ITEM_FAILED

    requests = [
        FailoverRequest(topology=topology, target_node=args.target, force=args.force,
                        fix_quorum=args.fix_quorum, move_cluster_group=args.move_cluster_group)
        for topology in topologies
    ]
    confirm = (lambda prompt: True) if args.yes else prompt_confirmation
    settle = args.settle_seconds if args.settle_seconds is not None else settings.failover_settle_seconds
    runner = FailoverRunner(executor, cluster_client=PowerShellClusterClient(settings.powershell_executable),
                            confirm=confirm, settle_seconds=settle)
    batch = runner.run(requests)

    for outcome in batch.outcomes:
        status = "MOVED" if outcome.moved else "NOT MOVED"
        print(f"\n{outcome.availability_group} -> {outcome.target_node}: {status}")
        print(f"  {outcome.decision.message}")
        if outcome.error:
            print(f"  Error: {outcome.error}")
    for move in batch.cluster_moves:
        print(f"\nCluster group '{move.name}': {move.action} ({move.previous_owner} -> {move.new_owner})")
    return EXIT_ITEM_FAILED if batch.has_problems else EXIT_OK


def cmd_move_cluster_group(args, executor, settings) -> int:
    banner("CLUSTER GROUP RELOCATION")
    client = PowerShellClusterClient(settings.powershell_executable)
    results = move_cluster_groups(args.cluster, args.node, client=client, group_names=args.group)
    print(f"\n{'Group':<35} {'Previous':<15} {'New':<15} {'State':<10} Action")
    print("-" * 100)
    for result in results:
        print(f"{result.name:<35} {result.previous_owner:<15} {result.new_owner:<15} {result.state:<10} "
              f"{result.action}{': ' + result.error if result.error else ''}")
    return EXIT_ITEM_FAILED if any(result.error for result in results) else EXIT_OK


def cmd_shrink_log(args, executor, settings) -> int:
    banner("LOG FILE SHRINK")
    if args.server:
        if not args.database:
            raise TopologyValidationError(["--database"])
        try:
            results = [shrink_log_file(args.server, args.database, args.target_size_mb,
                                       executor=executor, file_name=args.file_name)]
        except LogFileResolutionError as e:
            print(f"\n Error: {e}")
            return EXIT_ITEM_FAILED
    else:
        results = []
        for topology in load_topologies(args, executor):
            results.extend(shrink_ag_logs(topology, args.target_size_mb, executor=executor))

    for result in results:
        status = "OK" if result.ok else f"FAILED: {result.error}"
        print(f"{result.server}/{result.database} ({result.logical_name or '?'}): {status}")
    return EXIT_OK if results and all(result.ok for result in results) else EXIT_ITEM_FAILED


def cmd_report(args, executor, settings) -> int:
    banner("AVAILABILITY GROUP STATUS REPORTS")
    topologies = load_topologies(args, executor)
    states = []
    for topology in topologies:
        states.extend(get_database_replication_state(topology, executor=executor))
    max_age = args.max_age_hours if args.max_age_hours is not None else settings.backup_max_age_hours
    paths = generate_reports(
        topologies, states, executor=executor,
        output_dir=args.output_dir or settings.report_dir,
        max_age_hours=max_age,
    )
    for path in paths:
        print(f" Report generated: {path}")
    return EXIT_OK


COMMANDS = {
    "topology": cmd_topology,
    "replica-state": cmd_replica_state,
    "database-state": cmd_database_state,
    "query": cmd_query,
    "failover": cmd_failover,
    "move-cluster-group": cmd_move_cluster_group,
    "shrink-log": cmd_shrink_log,
    "report": cmd_report,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings().with_overrides(
        username=args.username, password=args.password,
        odbc_driver=args.driver, log_level=args.log_level,
    )
    configure_logging(settings.log_level)

    credential = SqlCredential(settings.username, settings.password) if settings.username else None
    executor = SqlQueryExecutor(settings=settings, credential=credential)
    try:
        return COMMANDS[args.command](args, executor, settings)
    except AgAdminError as e:
        print(f"\n Error: {e}")
        return EXIT_HARD_STOP


if __name__ == "__main__":
    sys.exit(main())
