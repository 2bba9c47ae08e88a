"""Alembic environment for the Oncely idempotency schema.

Loaded by Alembic itself; programmatic entry points live in
oncely.persistence.migrate. Uses ONCELY_DATABASE_ADMIN_URL for connections.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from alembic import context

from oncely.persistence.db import get_admin_engine, get_database_url

if TYPE_CHECKING:
    from sqlalchemy import Connection

target_metadata = None


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode, emitting SQL to stdout."""
    url = get_database_url(admin=True)
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode.

    Reuses the connection handed over by run_upgrade/run_downgrade when there
    is one; otherwise connects with the admin engine.
    """
    connection = context.config.attributes.get("connection")
    if connection is not None:
        run_migrations_with_connection(connection)
        return

    engine = get_admin_engine()
    with engine.connect() as conn:
        run_migrations_with_connection(conn)


def run_migrations_with_connection(connection: Connection) -> None:
    """Run migrations using an existing connection."""
    context.configure(connection=connection, target_metadata=target_metadata)

    with context.begin_transaction():
        context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
