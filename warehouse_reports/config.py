from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import quote_plus

from warehouse_reports.errors import ConfigError

DEFAULT_ODBC_DRIVER = "ODBC Driver 18 for SQL Server"


@dataclass
class ExportConfig:
    warehouse_url: str
    reports_storage: str
    container: str
    max_concurrency: int
    max_attempts: int
    retry_backoff_s: float
    command_timeout_s: int
    http_timeout_s: float
    templates_dir: Optional[str]
    export_recent_packages: bool


def warehouse_url_from_connection_string(conn_str: str) -> str:
    """
    Accept either a SQLAlchemy URL or an ADO/ODBC style SQL Server connection string.

    "Server=tcp:x.database.windows.net;Database=warehouse;..." becomes
    "mssql+pyodbc:///?odbc_connect=Driver%3D...".
    """
    conn_str = conn_str.strip()
    if "://" in conn_str:
        return conn_str
    if "driver=" not in conn_str.lower():
        conn_str = f"Driver={{{DEFAULT_ODBC_DRIVER}}};{conn_str}"
    return "mssql+pyodbc:///?odbc_connect=" + quote_plus(conn_str)


def _number(env: Mapping[str, str], name: str, default: str, cast):
    raw = env.get(name, default).strip()
    try:
        value = cast(raw)
    except ValueError as e:
        raise ConfigError(f"Invalid {name}: {raw!r}") from e
    if value <= 0:
        raise ConfigError(f"{name} must be > 0, got {raw!r}")
    return value


def load_config_from_env(env: Optional[Mapping[str, str]] = None) -> ExportConfig:
    env = os.environ if env is None else env

    warehouse_cs = env.get("NUGET_WAREHOUSE_SQL_AZURE_CONNECTION_STRING", "").strip()
    if not warehouse_cs:
        raise ConfigError("Missing NUGET_WAREHOUSE_SQL_AZURE_CONNECTION_STRING")

    reports_storage = env.get("NUGET_WAREHOUSE_REPORTS_STORAGE", "").strip()
    if not reports_storage:
        raise ConfigError("Missing NUGET_WAREHOUSE_REPORTS_STORAGE")

    return ExportConfig(
        warehouse_url=warehouse_url_from_connection_string(warehouse_cs),
        reports_storage=reports_storage,
        container=env.get("WAREHOUSE_REPORTS_CONTAINER", "popularity").strip() or "popularity",
        max_concurrency=_number(env, "WAREHOUSE_REPORTS_MAX_CONCURRENCY", "4", int),
        max_attempts=_number(env, "WAREHOUSE_REPORTS_MAX_ATTEMPTS", "10", int),
        retry_backoff_s=_number(env, "WAREHOUSE_REPORTS_RETRY_BACKOFF_S", "20", float),
        command_timeout_s=_number(env, "WAREHOUSE_REPORTS_COMMAND_TIMEOUT_S", "300", int),
        http_timeout_s=_number(env, "WAREHOUSE_REPORTS_HTTP_TIMEOUT_S", "120", float),
        templates_dir=env.get("WAREHOUSE_REPORTS_TEMPLATES_DIR", "").strip() or None,
        export_recent_packages=env.get("WAREHOUSE_REPORTS_RECENT_PACKAGES", "1").strip().lower()
        in ("1", "true", "yes", "on"),
    )
