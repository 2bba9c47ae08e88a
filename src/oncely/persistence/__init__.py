"""Oncely persistence: PostgreSQL connectivity and migration support."""

from oncely.persistence.db import (
    DatabaseConfigError,
    begin_app_conn,
    get_admin_engine,
    get_app_engine,
    get_database_url,
    is_postgres_configured,
    reset_engines,
)

__all__ = [
    "DatabaseConfigError",
    "begin_app_conn",
    "get_admin_engine",
    "get_app_engine",
    "get_database_url",
    "is_postgres_configured",
    "reset_engines",
]
