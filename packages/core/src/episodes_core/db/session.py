from __future__ import annotations

from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from episodes_core.settings import settings


def make_session_factory(bind: str | Engine, **engine_kwargs) -> sessionmaker[Session]:
    engine = bind if isinstance(bind, Engine) else create_engine(bind, pool_pre_ping=True, **engine_kwargs)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@lru_cache(maxsize=1)
def session_factory() -> sessionmaker[Session]:
    """Process-wide factory bound to `EPISODES_DATABASE_URL`, created on first use."""
    return make_session_factory(settings.database_url)
