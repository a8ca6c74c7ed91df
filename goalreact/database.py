"""SQLModel database engine and table creation."""

import logging

from sqlalchemy import inspect
from sqlmodel import SQLModel, create_engine

from goalreact.config import settings

logger = logging.getLogger(__name__)

# SQLite needs check_same_thread=False; PostgreSQL does not
connect_args = {}
if settings.database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False

engine = create_engine(
    settings.database_url,
    echo=False,
    connect_args=connect_args,
)


def _run_migrations(bind=None):
    """Add nullable columns introduced after a table was first created."""
    from sqlalchemy import text

    bind = bind or engine
    inspector = inspect(bind)
    existing_tables = set(inspector.get_table_names())

    for table in SQLModel.metadata.sorted_tables:
        if table.name not in existing_tables:
            continue
        columns = {col["name"] for col in inspector.get_columns(table.name)}
        for column in table.columns:
            if column.name in columns:
                continue
            if not column.nullable:
                logger.warning(f"Cannot add required column {table.name}.{column.name}, recreate the table")
                continue
            col_type = column.type.compile(dialect=bind.dialect)
            logger.info(f"Migrating: adding {table.name}.{column.name}")
            with bind.begin() as conn:
                conn.execute(text(f"ALTER TABLE {table.name} ADD COLUMN {column.name} {col_type}"))


def create_db_and_tables(bind=None):
    """Create all tables. Called on startup."""
    import goalreact.models  # noqa: F401  registers table metadata

    bind = bind or engine
    SQLModel.metadata.create_all(bind)
    _run_migrations(bind)
