"""
Connection and runtime settings for the Availability Group admin scripts
Values come from the environment (or a .env file) and can be overridden per run
"""
import logging
import os
from dataclasses import dataclass, replace

from dotenv import load_dotenv

load_dotenv()

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def _env_int(name, default):
    value = os.getenv(name, "")
    try:
        return int(value) if value.strip() else default
    except ValueError:
        logging.getLogger(__name__).warning(f"Ignoring non-numeric {name}={value!r}, using {default}")
        return default


@dataclass(frozen=True)
class Settings:
    odbc_driver: str = "ODBC Driver 17 for SQL Server"
    username: str = ""
    password: str = ""
    port: str = ""
    database: str = "master"
    connect_timeout: int = 15
    query_timeout: int = 0
    trust_server_certificate: bool = True
    failover_settle_seconds: int = 10
    report_dir: str = "outputs"
    backup_max_age_hours: int = 24
    powershell_executable: str = "powershell"
    log_level: str = "INFO"

    @property
    def uses_integrated_auth(self) -> bool:
        return not self.username

    def with_overrides(self, **overrides) -> "Settings":
        """Return a copy with every non-None override applied (CLI flags win over env)"""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes)


def load_settings() -> Settings:
    return Settings(
        odbc_driver=os.getenv("SQL_ODBC_DRIVER", "ODBC Driver 17 for SQL Server"),
        username=os.getenv("SQL_USERNAME", ""),
        password=os.getenv("SQL_PASSWORD", ""),
        port=os.getenv("SQL_PORT", ""),
        database=os.getenv("SQL_DATABASE", "master"),
        connect_timeout=_env_int("SQL_CONNECT_TIMEOUT", 15),
        query_timeout=_env_int("SQL_QUERY_TIMEOUT", 0),
        trust_server_certificate=os.getenv("SQL_TRUST_SERVER_CERTIFICATE", "yes").strip().lower() in ("1", "yes", "true"),
        failover_settle_seconds=_env_int("AG_FAILOVER_SETTLE_SECONDS", 10),
        report_dir=os.getenv("AG_REPORT_DIR", "outputs"),
        backup_max_age_hours=_env_int("AG_BACKUP_MAX_AGE_HOURS", 24),
        powershell_executable=os.getenv("POWERSHELL_EXECUTABLE", "powershell"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


def configure_logging(level="INFO"):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
    )
