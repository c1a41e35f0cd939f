"""
Named T-SQL templates used by the Availability Group scripts
Parameters use pyodbc qmark placeholders; statements that take object names
(ALTER AVAILABILITY GROUP, ALTER DATABASE, DBCC) are built with quote_name()
"""

QUERIES = {
    # run against a seed (node or listener): every AG known to the local cluster metadata
    'ag_names_and_primaries': """
        SELECT
            agc.name AS AvailabilityGroup,
            ags.primary_replica AS PrimaryReplica
        FROM sys.availability_groups_cluster agc
        INNER JOIN sys.dm_hadr_availability_group_states ags
            ON agc.group_id = ags.group_id
        ORDER BY agc.name
    """,

    'ag_group_state': """
        SELECT
            CONVERT(nvarchar(36), ag.group_id) AS GroupId,
            ags.primary_replica AS PrimaryReplica,
            ags.synchronization_health_desc AS HealthState
        FROM sys.availability_groups ag
        INNER JOIN sys.dm_hadr_availability_group_states ags
            ON ag.group_id = ags.group_id
        WHERE ag.name = ?
    """,

    'ag_replicas': """
        SELECT
            ar.replica_server_name AS ReplicaServerName,
            ar.availability_mode_desc AS AvailabilityMode
        FROM sys.availability_replicas ar
        WHERE ar.group_id = CONVERT(uniqueidentifier, ?)
        ORDER BY ar.replica_server_name
    """,

    'ag_databases': """
        SELECT adc.database_name AS DatabaseName
        FROM sys.availability_databases_cluster adc
        WHERE adc.group_id = CONVERT(uniqueidentifier, ?)
        ORDER BY adc.database_name
    """,

    'ag_listeners': """
        SELECT agl.dns_name AS DnsName
        FROM sys.availability_group_listeners agl
        WHERE agl.group_id = CONVERT(uniqueidentifier, ?)
        ORDER BY agl.dns_name
    """,

    'ag_group_database_id': """
        SELECT CONVERT(nvarchar(36), adc.group_database_id) AS GroupDatabaseId
        FROM sys.availability_databases_cluster adc
        WHERE adc.database_name = ?
            AND adc.group_id = CONVERT(uniqueidentifier, ?)
    """,

    'ag_database_replica_states': """
        SELECT
            ar.replica_server_name AS ReplicaServerName,
            drs.synchronization_state_desc AS SynchronizationState,
            drs.synchronization_health_desc AS SynchronizationHealth,
            drcs.is_failover_ready AS IsFailoverReady,
            drs.is_suspended AS IsSuspended,
            drs.log_send_queue_size AS LogSendQueueSizeKb,
            drs.log_send_rate AS LogSendRateKbPerSec
        FROM sys.dm_hadr_database_replica_states drs
        INNER JOIN sys.availability_replicas ar
            ON drs.replica_id = ar.replica_id
        INNER JOIN sys.dm_hadr_database_replica_cluster_states drcs
            ON drs.replica_id = drcs.replica_id
            AND drs.group_database_id = drcs.group_database_id
        WHERE drs.group_database_id = CONVERT(uniqueidentifier, ?)
        ORDER BY ar.replica_server_name
    """,

    'ag_replica_states': """
        SELECT
            ar.replica_server_name AS ReplicaServerName,
            ars.role_desc AS Role,
            ar.availability_mode_desc AS AvailabilityMode,
            ar.failover_mode_desc AS FailoverMode,
            ars.operational_state_desc AS OperationalState,
            ars.connected_state_desc AS ConnectionState,
            ars.synchronization_health_desc AS SynchronizationHealth
        FROM sys.availability_replicas ar
        INNER JOIN sys.dm_hadr_availability_replica_states ars
            ON ar.replica_id = ars.replica_id
        WHERE ar.group_id = CONVERT(uniqueidentifier, ?)
        ORDER BY ar.replica_server_name
    """,

    'log_file_names': """
        SELECT name AS LogicalName, size * 8 / 1024 AS SizeMB
        FROM sys.database_files
        WHERE type_desc = 'LOG'
    """,

    # backups can be taken on any replica, so this runs against each one
    'last_backups': """
        SELECT
            bs.database_name AS DatabaseName,
            MAX(CASE WHEN bs.type = 'D' THEN bs.backup_finish_date END) AS LastFullBackup,
            MAX(CASE WHEN bs.type = 'I' THEN bs.backup_finish_date END) AS LastDiffBackup,
            MAX(CASE WHEN bs.type = 'L' THEN bs.backup_finish_date END) AS LastLogBackup
        FROM msdb.dbo.backupset bs
        WHERE bs.database_name IN (
            SELECT adc.database_name
            FROM sys.availability_databases_cluster adc
            WHERE adc.group_id = CONVERT(uniqueidentifier, ?)
        )
        GROUP BY bs.database_name
    """,
}


def get_query(name: str) -> str:
    try:
        return QUERIES[name]
    except KeyError:
        raise KeyError(f"Unknown query template: {name}") from None


def quote_name(name: str) -> str:
    """Bracket-quote an identifier the way QUOTENAME() does"""
    if name is None or not str(name).strip():
        raise ValueError("Identifier must not be empty")
    return "[" + str(name).replace("]", "]]") + "]"


def quote_string(value: str) -> str:
    return "N'" + str(value).replace("'", "''") + "'"


def failover_statement(ag_name: str) -> str:
    return f"ALTER AVAILABILITY GROUP {quote_name(ag_name)} FAILOVER;"


def forced_failover_statement(ag_name: str) -> str:
    return f"ALTER AVAILABILITY GROUP {quote_name(ag_name)} FORCE_FAILOVER_ALLOW_DATA_LOSS;"


def resume_database_statement(database_name: str) -> str:
    return f"ALTER DATABASE {quote_name(database_name)} SET HADR RESUME;"


def shrink_file_statement(logical_name: str, target_size_mb: int) -> str:
    return f"DBCC SHRINKFILE ({quote_string(logical_name)}, {int(target_size_mb)}) WITH NO_INFOMSGS;"
