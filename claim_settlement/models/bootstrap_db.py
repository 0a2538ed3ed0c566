# bootstrap_db.py
# Export Base for ORM models. Run this file as a script to create the rewards schema and tables.
from sqlalchemy import create_engine, text
from sqlalchemy.orm import declarative_base

from claim_settlement.core.config import DB_SCHEMA, settings

Base = declarative_base()


def run_bootstrap():
    """Create the rewards schema and every table the settlement engine needs."""
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL not set in environment")

    # Register all models on Base.metadata before create_all
    from claim_settlement.models import claims, notification, user  # noqa: F401

    eng = create_engine(settings.database_url, echo=True, future=True)
    with eng.begin() as conn:
        conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {DB_SCHEMA};"))
    Base.metadata.create_all(eng)
    print(f"Bootstrap complete: schema '{DB_SCHEMA}' and tables ready.")


if __name__ == "__main__":
    run_bootstrap()
