from __future__ import annotations

import json

import pytest

import ag_admin
from ag_admin import EXIT_HARD_STOP, EXIT_ITEM_FAILED, EXIT_OK, main
from conftest import make_topology
from sql_query_executor import SqlQueryExecutor


@pytest.fixture
def wired(monkeypatch, backend):
    """Route every executor the CLI builds to the fake backend"""
    monkeypatch.setattr(ag_admin, "SqlQueryExecutor",
                        lambda **kwargs: SqlQueryExecutor(connect=backend.connect, **kwargs))
    return backend


@pytest.fixture
def topology_file(tmp_path):
    path = tmp_path / "topology.json"
    path.write_text(json.dumps([make_topology().to_dict()]))
    return str(path)


def test_malformed_topology_file_is_a_hard_stop(tmp_path, wired, capsys) -> None:
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"name": "AG1", "replicas": ["A"]}))

    code = main(["failover", "--topology-file", str(path), "--target", "B"])

    assert code == EXIT_HARD_STOP
    assert "topology reader" in capsys.readouterr().out
    assert wired.calls == []


def test_missing_source_is_a_hard_stop(wired) -> None:
    assert main(["replica-state"]) == EXIT_HARD_STOP


def test_failover_to_unknown_replica_is_rejected(topology_file, wired, capsys) -> None:
    code = main(["failover", "--topology-file", topology_file, "--target", "Z", "--force", "--fix-quorum"])

    assert code == EXIT_ITEM_FAILED
    out = capsys.readouterr().out
    assert "NOT MOVED" in out
    assert "not a valid replica" in out
    assert wired.calls == []


def test_planned_failover_from_topology_file(topology_file, wired, capsys) -> None:
    code = main(["failover", "--topology-file", topology_file, "--target", "B", "--settle-seconds", "0"])

    assert code == EXIT_OK
    assert "AG1 -> B: MOVED" in capsys.readouterr().out
    assert wired.statements("B") == ["ALTER AVAILABILITY GROUP [AG1] FAILOVER;"]


def test_topology_command_exports_json(monkeypatch, tmp_path, wired, capsys) -> None:
    monkeypatch.setattr(ag_admin, "get_availability_group_topology", lambda seeds, executor: [make_topology()])
    target = tmp_path / "out.json"

    code = main(["topology", "NODE1", "--json", str(target)])

    assert code == EXIT_OK
    assert "Availability Group: AG1 (HEALTHY)" in capsys.readouterr().out
    assert json.loads(target.read_text())[0]["primary_replica"] == "A"


def test_query_command_reports_per_server_failures(wired, capsys) -> None:
    wired.unreachable.add("SQL2")

    code = main(["query", "--server", "SQL1", "--server", "SQL2", "--query", "SELECT 1"])

    assert code == EXIT_ITEM_FAILED
    out = capsys.readouterr().out
    assert "SQL1: no records" in out
    assert "SQL2: ERROR" in out


def test_query_command_succeeds_on_reachable_servers(wired) -> None:
    assert main(["query", "--server", "SQL1", "--query", "SELECT 1"]) == EXIT_OK


def test_standalone_shrink_needs_a_database(wired) -> None:
    assert main(["shrink-log", "--server", "SQL1"]) == EXIT_HARD_STOP


def test_standalone_shrink_with_ambiguous_log_files(wired, capsys) -> None:
    wired.add("SQL1", "log_file_names", rows=[
        {"LogicalName": "a_log", "SizeMB": 1},
        {"LogicalName": "b_log", "SizeMB": 1},
    ])

    code = main(["shrink-log", "--server", "SQL1", "--database", "Sales"])

    assert code == EXIT_ITEM_FAILED
    assert "several log files" in capsys.readouterr().out
    assert wired.statements() == []


@pytest.mark.parametrize("flag, expected", [(["--max-age-hours", "0"], 0), ([], 24)])
def test_report_backup_age_flag(monkeypatch, tmp_path, topology_file, wired, flag, expected) -> None:
    seen = {}

    def fake_generate(topologies, states, *, executor, output_dir, max_age_hours):
        seen["max_age_hours"] = max_age_hours
        return []

    monkeypatch.setattr(ag_admin, "generate_reports", fake_generate)
    monkeypatch.delenv("AG_BACKUP_MAX_AGE_HOURS", raising=False)

    code = main(["report", "--topology-file", topology_file, "--output-dir", str(tmp_path)] + flag)

    assert code == EXIT_OK
    assert seen["max_age_hours"] == expected
