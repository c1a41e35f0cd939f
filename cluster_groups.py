"""
Windows Failover Cluster commands and cluster group relocation
Cluster cmdlets (FailoverClusters module) run remotely through PowerShell's
Invoke-Command; results come back as JSON
"""
import json
import logging
import subprocess
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from ag_errors import ClusterCommandError

logger = logging.getLogger(__name__)

CORE_CLUSTER_GROUP = "Cluster Group"


def ps_quote(value) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def node_name_of(server: str) -> str:
    """Cluster node behind a SQL Server instance name (NODE1\\INST1 -> NODE1)"""
    return str(server).split("\\")[0].split(",")[0].strip()


def _same_node(left, right) -> bool:
    if not left or not right:
        return False
    return node_name_of(left).split(".")[0].upper() == node_name_of(right).split(".")[0].upper()


@dataclass(frozen=True)
class ClusterNode:
    name: str
    state: str
    node_weight: Optional[int] = None


@dataclass(frozen=True)
class ClusterGroup:
    name: str
    owner_node: str
    state: str

    @property
    def is_online(self) -> bool:
        return self.state.upper() == "ONLINE"


@dataclass(frozen=True)
class ClusterGroupMoveResult:
    name: str
    previous_owner: str
    new_owner: str
    state: str
    action: str
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'previous_owner': self.previous_owner,
            'new_owner': self.new_owner,
            'state': self.state,
            'action': self.action,
            'error': self.error,
        }


_GROUP_SELECT = (
    "Select-Object Name, @{n='OwnerNode';e={$_.OwnerNode.Name}}, @{n='State';e={$_.State.ToString()}}"
)
_NODE_SELECT = "Select-Object Name, @{n='State';e={$_.State.ToString()}}, NodeWeight"


class PowerShellClusterClient:
    def __init__(self, executable: str = "powershell", runner: Optional[Callable] = None, timeout: int = 600):
        self.executable = executable
        self.runner = runner or subprocess.run
        self.timeout = timeout

    def _invoke(self, computer: str, script: str) -> str:
        command_text = (
            f"Invoke-Command -ComputerName {ps_quote(computer)} -ErrorAction Stop -ScriptBlock "
            f"{{ Import-Module FailoverClusters; {script} }}"
        )
        command = [self.executable, "-NoProfile", "-NonInteractive", "-Command", command_text]
        logger.debug(f"Running cluster command on {computer}: {script}")
        try:
            completed = self.runner(command, capture_output=True, text=True, check=False, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise ClusterCommandError(script, -1, f"No answer from {computer} after {self.timeout} seconds") from e
        except OSError as e:
            raise ClusterCommandError(script, -1, f"Cannot start {self.executable}: {e}") from e
        if completed.returncode != 0:
            raise ClusterCommandError(script, completed.returncode, completed.stderr or "")
        return completed.stdout or ""

    def _invoke_json(self, computer: str, script: str) -> List[dict]:
        output = self._invoke(computer, f"{script} | ConvertTo-Json -Depth 3 -Compress").strip()
        if not output:
            return []
        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise ClusterCommandError(script, 0, f"Unreadable cluster output: {e}") from e
        return data if isinstance(data, list) else [data]

    def get_cluster_nodes(self, cluster: str) -> List[ClusterNode]:
        rows = self._invoke_json(cluster, f"Get-ClusterNode -Cluster {ps_quote(cluster)} | {_NODE_SELECT}")
        return [
            ClusterNode(name=row['Name'], state=row.get('State') or "", node_weight=row.get('NodeWeight'))
            for row in rows
        ]

    def get_cluster_groups(self, cluster: str) -> List[ClusterGroup]:
        rows = self._invoke_json(cluster, f"Get-ClusterGroup -Cluster {ps_quote(cluster)} | {_GROUP_SELECT}")
        return [
            ClusterGroup(name=row['Name'], owner_node=row.get('OwnerNode') or "", state=row.get('State') or "")
            for row in rows
        ]

    def move_cluster_group(self, cluster: str, group: str, node: str) -> ClusterGroup:
        rows = self._invoke_json(
            cluster,
            f"Move-ClusterGroup -Cluster {ps_quote(cluster)} -Name {ps_quote(group)} -Node {ps_quote(node)} | {_GROUP_SELECT}",
        )
        if not rows:
            return ClusterGroup(name=group, owner_node=node, state="Unknown")
        row = rows[0]
        return ClusterGroup(name=row['Name'], owner_node=row.get('OwnerNode') or "", state=row.get('State') or "")

    def set_node_weight(self, cluster: str, node: str, weight: int):
        self._invoke(cluster, f"(Get-ClusterNode -Cluster {ps_quote(cluster)} -Name {ps_quote(node)}).NodeWeight = {int(weight)}")

    def stop_cluster_node(self, cluster: str, node: str):
        self._invoke(cluster, f"Stop-ClusterNode -Cluster {ps_quote(cluster)} -Name {ps_quote(node)}")

    def start_cluster_node(self, cluster: str, node: str, force_quorum: bool = False):
        fix = " -FixQuorum" if force_quorum else ""
        self._invoke(cluster, f"Start-ClusterNode -Cluster {ps_quote(cluster)} -Name {ps_quote(node)}{fix}")


def move_cluster_groups(cluster: str, target_node: str, *, client,
                        group_names: Optional[Iterable[str]] = None) -> List[ClusterGroupMoveResult]:
    """
    Move every cluster group (or only the named ones) to target_node.
    Offline groups are skipped, groups already on the node are left alone and a
    failed move is recorded without stopping the remaining groups.
    """
    target_node = node_name_of(target_node)
    groups = client.get_cluster_groups(cluster)
    if group_names is not None:
        wanted = {name.upper() for name in group_names}
        groups = [group for group in groups if group.name.upper() in wanted]
        if not groups:
            logger.warning(f"None of {sorted(wanted)} exist on cluster {cluster}")

    results = []
    for group in groups:
        if not group.is_online:
            logger.warning(f"Cluster group '{group.name}' is {group.state}, not moving it")
            results.append(ClusterGroupMoveResult(group.name, group.owner_node, group.owner_node,
                                                  group.state, "skipped: offline"))
            continue
        if _same_node(group.owner_node, target_node):
            logger.info(f"Cluster group '{group.name}' already owned by {group.owner_node}")
            results.append(ClusterGroupMoveResult(group.name, group.owner_node, group.owner_node,
                                                  group.state, "none: already on target"))
            continue
        try:
            moved = client.move_cluster_group(cluster, group.name, target_node)
        except ClusterCommandError as e:
            logger.error(f"Could not move cluster group '{group.name}' to {target_node}: {e}")
            results.append(ClusterGroupMoveResult(group.name, group.owner_node, group.owner_node,
                                                  group.state, "failed", error=str(e)))
            continue
        logger.info(f"Moved cluster group '{group.name}' from {group.owner_node} to {moved.owner_node}")
        results.append(ClusterGroupMoveResult(group.name, group.owner_node, moved.owner_node,
                                              moved.state, "moved"))
    return results
