# db.py
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from config import AppConfig


def create_db_engine(config: Optional[AppConfig] = None) -> Engine:
    """
    Builds the shared Engine. Every roster-affecting statement runs inside
    engine.begin(), so a timed-out statement rolls back the whole unit.
    """
    config = config or AppConfig.from_env()

    if not config.db_url:
        raise RuntimeError("SUPABASE_DB_URL is not set")

    connect_args = {}
    if config.db_url.startswith("postgresql"):
        connect_args["options"] = f"-c statement_timeout={config.db_statement_timeout_ms}"
        connect_args["connect_timeout"] = config.db_pool_timeout_seconds

    return create_engine(
        config.db_url,
        pool_pre_ping=True,
        pool_timeout=config.db_pool_timeout_seconds,
        connect_args=connect_args,
    )
