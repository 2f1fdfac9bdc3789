from __future__ import annotations

from collections.abc import Iterator

import pytest
import structlog
from sqlalchemy import create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from episodes_core.db.base import Base
from episodes_core.db.models import Block, Duplication, Episode, Item, Part
from episodes_core.db.session import make_session_factory
from duplication_pipeline.settings import Settings
from duplication_pipeline.stages import StageContext


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    yield
    structlog.reset_defaults()


@pytest.fixture()
def engine(tmp_path) -> Iterator[Engine]:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'episodes.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return make_session_factory(engine)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        duplication_enabled=True,
        chunk_size=10,
        outer_chunk_factor=10,
        block_chunk_size=20,
        transaction_retry_wait_s=0,
        transaction_retry_wait_max_s=0,
        release_delay_s=0.5,
        workers=1,
    )


@pytest.fixture()
def context(session_factory: sessionmaker[Session], settings: Settings) -> StageContext:
    return StageContext(
        session_factory=session_factory,
        settings=settings,
        logger=structlog.get_logger("tests"),
        feature_gate=lambda: True,
    )


def seed_episode(
    session_factory: sessionmaker[Session],
    *,
    parts: int = 1,
    items_per_part: int = 2,
    blocks_per_item: int = 3,
    title: str = "Pilot",
) -> int:
    """Create a source episode tree and return the episode id."""
    with session_factory() as session:
        episode = Episode(title=title)
        session.add(episode)
        session.flush()
        for p in range(parts):
            part = Part(episode_id=episode.id, name=f"part {p}")
            session.add(part)
            session.flush()
            for i in range(items_per_part):
                item = Item(part_id=part.id, name=f"item {p}.{i}")
                session.add(item)
                session.flush()
                session.add_all(
                    Block(
                        item_id=item.id,
                        name=f"block {p}.{i}.{b}",
                        field_1=f"f1-{b}",
                        field_2=None,
                        field_3="x" * b,
                        media=f"media/{p}/{i}/{b}.png",
                    )
                    for b in range(blocks_per_item)
                )
        session.commit()
        return episode.id


def create_duplication(session_factory: sessionmaker[Session], episode_id: int, **values) -> int:
    with session_factory() as session:
        duplication = Duplication.for_episode(episode_id)
        for key, value in values.items():
            setattr(duplication, key, value)
        session.add(duplication)
        session.commit()
        return duplication.id


def load_duplication(session_factory: sessionmaker[Session], duplication_id: int) -> Duplication:
    with session_factory(expire_on_commit=False) as session:
        return session.get(Duplication, duplication_id)


def count(session: Session, model, *criteria) -> int:
    stmt = select(func.count()).select_from(model)
    if criteria:
        stmt = stmt.where(*criteria)
    return int(session.scalar(stmt) or 0)


def failing_inserts(engine: Engine, table: str, *, fail_after: int = 0, failures: int | None = None) -> dict[str, int]:
    """
    Make INSERTs into `table` raise a transient `OperationalError`.

    The first `fail_after` statements go through; after that `failures` statements fail
    (all of them when None). Returns live counters of seen and failed statements.
    """
    calls = {"seen": 0, "failed": 0}

    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        if not statement.startswith(f"INSERT INTO {table} "):
            return
        calls["seen"] += 1
        if calls["seen"] <= fail_after:
            return
        if failures is not None and calls["failed"] >= failures:
            return
        calls["failed"] += 1
        raise OperationalError(statement, parameters, Exception("database is locked"))

    event.listen(engine, "before_cursor_execute", before_cursor_execute)
    return calls
