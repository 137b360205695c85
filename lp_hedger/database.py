"""SQLModel database engine and session management."""

import logging

from sqlalchemy import inspect
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

from lp_hedger.config import settings

logger = logging.getLogger(__name__)

# SQLite needs check_same_thread=False; PostgreSQL does not
connect_args = {}
engine_kwargs = {}
if settings.database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False
    # In-memory databases live per connection; share a single one
    if settings.database_url in ("sqlite://", "sqlite:///:memory:"):
        engine_kwargs["poolclass"] = StaticPool

engine = create_engine(
    settings.database_url,
    echo=False,
    connect_args=connect_args,
    **engine_kwargs,
)


def _run_migrations():
    """Run lightweight schema migrations for columns added after first release."""
    from sqlalchemy import text

    inspector = inspect(engine)
    tables = inspector.get_table_names()

    if "short_rebalance" in tables:
        columns = {col["name"] for col in inspector.get_columns("short_rebalance")}
        with engine.connect() as conn:
            if "status" not in columns:
                logger.info("Migrating: adding short_rebalance.status")
                conn.execute(text(
                    "ALTER TABLE short_rebalance ADD COLUMN status VARCHAR DEFAULT 'success' NOT NULL"
                ))
            if "message" not in columns:
                logger.info("Migrating: adding short_rebalance.message")
                conn.execute(text("ALTER TABLE short_rebalance ADD COLUMN message VARCHAR"))
            conn.commit()

    if "pnl_snapshot" in tables:
        columns = {col["name"] for col in inspector.get_columns("pnl_snapshot")}
        fee_columns = ("collected_fees0", "collected_fees1", "uncollected_fees0", "uncollected_fees1")
        missing = [c for c in fee_columns if c not in columns]
        if missing:
            with engine.connect() as conn:
                for col in missing:
                    logger.info(f"Migrating: adding pnl_snapshot.{col}")
                    conn.execute(text(f"ALTER TABLE pnl_snapshot ADD COLUMN {col} NUMERIC(40, 18)"))
                conn.commit()


def create_db_and_tables():
    """Create all tables. Called on startup."""
    import lp_hedger.models  # noqa: F401  (registers tables on the metadata)

    SQLModel.metadata.create_all(engine)
    _run_migrations()


def get_session() -> Session:
    """Dependency that yields a database session."""
    with Session(engine) as session:
        yield session
