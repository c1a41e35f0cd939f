"""
HTML status reports for Availability Groups
Each report has a highlighted "Failed" table (only when something failed) above
a "Successful" table; rows are banded by a grouping column
"""
import html
import json
import logging
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, List, Optional

import pandas as pd

from ag_models import DatabaseReplicationState, require_topology
from ag_queries import get_query
from sql_query_executor import SqlQueryExecutor, flatten_rows

logger = logging.getLogger(__name__)

REPORT_STYLE = """
    body { font-family: Segoe UI, Arial, sans-serif; font-size: 13px; color: #222; }
    h1 { font-size: 20px; }
    h2 { font-size: 16px; margin-top: 24px; }
    table { border-collapse: collapse; margin-bottom: 16px; }
    th { background: #34495e; color: #fff; padding: 4px 8px; text-align: left; }
    td { padding: 4px 8px; border-bottom: 1px solid #ddd; }
    tr.band-0 td { background: #ffffff; }
    tr.band-1 td { background: #eef2f5; }
    table.failed tr.band-0 td { background: #fdecea; }
    table.failed tr.band-1 td { background: #f9d6d2; }
    table.failed th { background: #c0392b; }
"""

BACKUP_COLUMNS = ['LastFullBackup', 'LastDiffBackup', 'LastLogBackup']


def _cell(value) -> str:
    if value is None:
        return ""
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):
        pass
    if isinstance(value, pd.Timestamp):
        return value.strftime('%Y-%m-%d %H:%M:%S')
    return html.escape(str(value))


def _table(frame: pd.DataFrame, group_column: str, css_class: str) -> str:
    frame = frame.sort_values(by=group_column, kind="stable")
    # band flips each time the grouping value changes
    bands = (frame[group_column] != frame[group_column].shift()).cumsum() % 2

    header = "".join(f"<th>{html.escape(str(column))}</th>" for column in frame.columns)
    body = []
    for (_, row), band in zip(frame.iterrows(), bands):
        cells = "".join(f"<td>{_cell(row[column])}</td>" for column in frame.columns)
        body.append(f'<tr class="band-{band}">{cells}</tr>')
    rows = "\n".join(body)
    return f'<table class="{css_class}">\n<tr>{header}</tr>\n{rows}\n</table>'


def render_status_report(title: str, frame: pd.DataFrame, failed_mask, group_column: str,
                         generated_at: Optional[datetime] = None) -> str:
    """
    Render frame as an HTML page. Rows where failed_mask is True go to the "Failed"
    section, which is left out entirely when no row failed. The "Successful" section
    header is always present, even with no rows under it.
    """
    generated_at = generated_at or datetime.now()
    failed_mask = pd.Series(failed_mask, index=frame.index).fillna(False).astype(bool)
    failed = frame[failed_mask]
    successful = frame[~failed_mask]

    sections = []
    if not failed.empty:
        sections.append(f"<h2>Failed ({len(failed)})</h2>")
        sections.append(_table(failed, group_column, "failed"))
    sections.append(f"<h2>Successful ({len(successful)})</h2>")
    if successful.empty:
        sections.append("<p>No entries.</p>")
    else:
        sections.append(_table(successful, group_column, "successful"))

    content = "\n".join(sections)
    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{html.escape(title)}</title>
<style>{REPORT_STYLE}</style>
</head>
<body>
<h1>{html.escape(title)}</h1>
<p>Generated: {generated_at.strftime('%Y-%m-%d %H:%M:%S')}</p>
{content}
</body>
</html>
"""


def write_report(content: str, output_dir, report_name: str, report_date: Optional[datetime] = None) -> Path:
    report_date = report_date or datetime.now()
    directory = Path(output_dir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{report_name}_{report_date.strftime('%Y%m%d')}.html"
    path.write_text(content, encoding="utf-8")
    logger.info(f"Report written to {path}")
    return path


def export_json(records: Iterable, filepath) -> str:
    """Dump snapshot records (anything with to_dict) to a JSON file"""
    payload = [record.to_dict() if hasattr(record, "to_dict") else record for record in records]
    directory = os.path.dirname(str(filepath))
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(filepath, 'w') as f:
        json.dump(payload, f, indent=2, default=str)
    return str(filepath)


# Availability Group synchronization

SYNC_COLUMNS = {
    'availability_group': 'Availability Group',
    'database_name': 'Database',
    'replica_server_name': 'Replica',
    'synchronization_state': 'Sync State',
    'synchronization_health': 'Sync Health',
    'is_failover_ready': 'Failover Ready',
    'is_suspended': 'Suspended',
    'log_send_queue_size_kb': 'Send Queue (KB)',
    'log_send_rate_kb_per_sec': 'Send Rate (KB/s)',
    'estimated_catchup_time': 'Est. Catch-up',
}


def database_state_frame(states: Iterable[DatabaseReplicationState]) -> pd.DataFrame:
    frame = pd.DataFrame([state.to_dict() for state in states], columns=list(SYNC_COLUMNS))
    return frame.rename(columns=SYNC_COLUMNS)


def sync_failed_mask(frame: pd.DataFrame) -> pd.Series:
    if frame.empty:
        return pd.Series([], dtype=bool, index=frame.index)
    return (frame['Sync Health'] != 'HEALTHY') | (frame['Suspended'].astype(bool))


def render_sync_report(states: Iterable[DatabaseReplicationState], generated_at: Optional[datetime] = None) -> str:
    frame = database_state_frame(states)
    return render_status_report("Availability Group Synchronization Status", frame,
                                sync_failed_mask(frame), 'Database', generated_at)


# Backups

def get_backup_status(topologies, *, executor: SqlQueryExecutor, now: Optional[datetime] = None,
                      max_age_hours: int = 24) -> pd.DataFrame:
    """
    Newest full, differential and log backup of every AG database, taken on any replica.
    A database fails when it has no full backup or its newest backup is older than max_age_hours.
    """
    now = now or datetime.now()
    threshold = pd.Timestamp(now - timedelta(hours=max_age_hours))
    frames = []

    for topology in topologies:
        topology = require_topology(topology)
        results = executor.execute(list(topology.replicas), get_query('last_backups'), database="msdb",
                                   params=(topology.group_id,))
        for result in results:
            if not result.ok:
                logger.warning(f"Backup history of {result.server} unavailable: {result.error}")

        history = pd.DataFrame(flatten_rows(results), columns=['DatabaseName'] + BACKUP_COLUMNS)
        for column in BACKUP_COLUMNS:
            history[column] = pd.to_datetime(history[column], errors="coerce")
        latest = history.groupby('DatabaseName', as_index=False)[BACKUP_COLUMNS].max()

        databases = pd.DataFrame({'DatabaseName': list(topology.databases)})
        merged = databases.merge(latest, on='DatabaseName', how='left')
        merged.insert(0, 'AvailabilityGroup', topology.name)
        frames.append(merged)

    if not frames:
        return pd.DataFrame(columns=['AvailabilityGroup', 'DatabaseName'] + BACKUP_COLUMNS + ['Status'])

    frame = pd.concat(frames, ignore_index=True)
    for column in BACKUP_COLUMNS:
        frame[column] = pd.to_datetime(frame[column], errors="coerce")
    newest = frame[BACKUP_COLUMNS].max(axis=1)
    stale = frame['LastFullBackup'].isna() | newest.isna() | (newest < threshold)
    frame['Status'] = stale.map({True: 'FAILED', False: 'OK'})
    return frame


def render_backup_report(frame: pd.DataFrame, generated_at: Optional[datetime] = None) -> str:
    return render_status_report("Availability Group Backup Status", frame,
                                frame['Status'] == 'FAILED', 'AvailabilityGroup', generated_at)


def generate_reports(topologies: List, states: Iterable[DatabaseReplicationState], *, executor: SqlQueryExecutor,
                     output_dir, max_age_hours: int = 24, now: Optional[datetime] = None) -> List[Path]:
    now = now or datetime.now()
    paths = [write_report(render_sync_report(states, now), output_dir, "ag_sync_status", now)]
    backups = get_backup_status(topologies, executor=executor, now=now, max_age_hours=max_age_hours)
    paths.append(write_report(render_backup_report(backups, now), output_dir, "ag_backup_status", now))
    return paths
