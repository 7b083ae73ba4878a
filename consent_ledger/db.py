"""
SQLAlchemy plumbing shared by the consent, registry and audit stores
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base

from .config import get_ledger_config
from .utils.clock import ensure_utc

Base = declarative_base()


def create_db_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """Create an engine for the configured database, SQLite by default"""
    config = get_ledger_config()
    url = database_url or config.database_url
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    engine = create_engine(
        url,
        echo=config.database_echo if echo is None else echo,
        connect_args=connect_args,
    )
    Base.metadata.create_all(bind=engine)
    return engine


def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Datetimes are stored as naive UTC"""
    value = ensure_utc(value)
    return value.replace(tzinfo=None) if value is not None else None
