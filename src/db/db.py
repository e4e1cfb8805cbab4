from __future__ import annotations

from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import Base

MEMORY_DB_URL = "sqlite://"


def init_db(db_url: str = MEMORY_DB_URL, echo: bool = False) -> sessionmaker[Session]:
    engine: Engine = create_engine(db_url, echo=echo, **_engine_options(db_url))

    Base.metadata.create_all(engine)
    return sessionmaker(engine)


def _engine_options(db_url: str) -> dict[str, Any]:
    if not db_url.startswith("sqlite"):
        return {}

    options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if db_url in (MEMORY_DB_URL, "sqlite:///:memory:"):
        # One shared connection, otherwise every thread would see its own empty database.
        options["poolclass"] = StaticPool
    elif db_url.startswith("sqlite:///"):
        Path(db_url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)
    return options
