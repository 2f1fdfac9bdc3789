"""Level duplicators: the chunked copy algorithm shared by every tree level.

A level is copied without any in-memory state from the level above it. The
`orig_id -> id` remap of the parents is rebuilt from the provenance links already
committed under the target episode, one outer chunk at a time:

    for each chunk of copied parents (orig_id is not null):
        parent_map = {parent.orig_id: parent.id}
        for each chunk of source children whose parent id is in parent_map:
            copy rows, pointing them at parent_map[row.parent], orig_id = row.id
            insert + progress update in one retried transaction

Blocks sit two hops below the parts, so their parent map is rebuilt through a chunk of
copied parts first and then a chunk of copied items of those parts.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import Any, ClassVar

import structlog
from sqlalchemy import insert, select
from sqlalchemy.orm import Session

from episodes_core.db.enums import DuplicationStage
from episodes_core.db.models import Block, ContentNode, Duplication, Episode, Item, Part
from episodes_core.db.queries import duplicated_rows, existing_copies, iter_chunks, rows_under
from episodes_core.db.transaction import DEFAULT_ATTEMPTS, run_in_transaction
from duplication_pipeline.errors import OriginalEpisodeNotFound
from duplication_pipeline.settings import Settings


@dataclass
class LevelStats:
    """Counters for one level run."""

    inserted: int = 0
    # Outer loop (copied parents) and inner loop (source children) chunk counts.
    parent_chunks: int = 0
    child_chunks: int = 0
    # Blocks only: chunks of copied parts walked to reach the copied items.
    ancestor_chunks: int = 0
    # Rows without a parent mapping; skipped, not failed.
    dropped: int = 0
    # Rows that already had a copy under the target tree (resumed run).
    already_copied: int = 0

    def as_log(self) -> dict[str, int]:
        return {
            "inserted": self.inserted,
            "parent_chunks": self.parent_chunks,
            "child_chunks": self.child_chunks,
            "ancestor_chunks": self.ancestor_chunks,
            "dropped": self.dropped,
            "already_copied": self.already_copied,
        }


def duplicate_row(row: ContentNode, new_parent_id: int | None) -> dict[str, Any]:
    """Insert payload for a copy of `row`: same payload, new parent, provenance set."""
    values = row.payload()
    if row.parent_key:
        values[row.parent_key] = new_parent_id
    values["orig_id"] = row.id  # type: ignore[attr-defined]
    return values


def remap_rows(
    model: type[ContentNode],
    rows: Sequence[ContentNode],
    parent_map: dict[int, int],
    *,
    logger: structlog.BoundLogger,
) -> list[dict[str, Any]]:
    """
    Build copies for `rows`, resolving each row's new parent through `parent_map`.

    A row whose parent has no entry is dropped and reported with a
    `duplication.row.dropped` event; the rest of the chunk is still copied.
    """
    copies: list[dict[str, Any]] = []
    for row in rows:
        orig_parent_id = getattr(row, model.parent_key)
        new_parent_id = parent_map.get(orig_parent_id)
        if new_parent_id is None:
            logger.warning(
                "duplication.row.dropped",
                level=model.__tablename__,  # type: ignore[attr-defined]
                row_id=row.id,  # type: ignore[attr-defined]
                orig_parent_id=orig_parent_id,
                reason="missing parent mapping",
            )
            continue
        copies.append(duplicate_row(row, new_parent_id))
    return copies


class LevelDuplicator(ABC):
    """
    Copy every row of one level of the source tree into the target tree.

    Subclasses choose the model and how the parent remap is rebuilt; the chunk loop,
    the remap, the skip of rows copied by an earlier run, and the retried insert live
    here.
    """

    model: ClassVar[type[ContentNode]]
    stage: ClassVar[DuplicationStage]

    def __init__(
        self,
        session: Session,
        *,
        duplication_id: int,
        new_episode_id: int,
        chunk_size: int,
        parent_chunk_size: int,
        ancestor_chunk_size: int | None = None,
        attempts: int = DEFAULT_ATTEMPTS,
        retry_wait_s: float = 0.1,
        retry_wait_max_s: float = 2.0,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.session = session
        self.duplication_id = duplication_id
        self.new_episode_id = new_episode_id
        self.chunk_size = chunk_size
        self.parent_chunk_size = parent_chunk_size
        self.ancestor_chunk_size = ancestor_chunk_size or parent_chunk_size
        self.attempts = attempts
        self.retry_wait_s = retry_wait_s
        self.retry_wait_max_s = retry_wait_max_s
        self.logger = logger or structlog.get_logger(__name__)
        self.stats = LevelStats()

    @classmethod
    @abstractmethod
    def from_settings(
        cls,
        session: Session,
        *,
        duplication_id: int,
        new_episode_id: int,
        settings: Settings,
        logger: structlog.BoundLogger | None = None,
    ) -> LevelDuplicator:
        raise NotImplementedError

    @abstractmethod
    def parent_maps(self) -> Iterator[dict[int, int]]:
        """Yield `orig_parent_id -> new_parent_id`, one outer chunk at a time."""

    def run(self) -> LevelStats:
        self.stats = LevelStats()
        for parent_map in self.parent_maps():
            self.stats.parent_chunks += 1
            self.logger.debug(
                "duplication.parents.chunk",
                parent_chunk=self.stats.parent_chunks,
                parents_in_chunk=len(parent_map),
            )
            if parent_map:
                self._copy_children(parent_map)

        if self.stats.parent_chunks == 0:
            self.logger.info("duplication.level.no_parents", level=self.model.__tablename__)  # type: ignore[attr-defined]
        return self.stats

    def _copy_children(self, parent_map: dict[int, int]) -> None:
        new_parent_ids = list(parent_map.values())
        children = rows_under(self.model, parent_map.keys())
        for rows in iter_chunks(self.session, children, self.model.id, self.chunk_size, scalars=True):  # type: ignore[attr-defined]
            self.stats.child_chunks += 1
            chunk_number = self.stats.child_chunks

            copied = existing_copies(self.session, self.model, [row.id for row in rows], new_parent_ids)
            if copied:
                self.stats.already_copied += len(copied)
                rows = [row for row in rows if row.id not in copied]

            copies = remap_rows(self.model, rows, parent_map, logger=self.logger)
            self.stats.dropped += len(rows) - len(copies)

            self.logger.debug(
                "duplication.chunk.prepared",
                chunk_number=chunk_number,
                rows_in_chunk=len(copies),
                already_copied=len(copied),
            )
            if copies:
                self.stats.inserted += self._insert(copies, chunk_number)

    def _insert(self, copies: list[dict[str, Any]], chunk_number: int) -> int:
        # The payload is built once; a retry only repeats the write.
        def write(session: Session) -> int:
            session.execute(insert(self.model), copies)
            duplication = session.get(Duplication, self.duplication_id, with_for_update=True, populate_existing=True)
            if duplication is not None:
                duplication.add_progress(self.stage, len(copies))
            return len(copies)

        inserted = run_in_transaction(
            self.session,
            write,
            attempts=self.attempts,
            wait_s=self.retry_wait_s,
            wait_max_s=self.retry_wait_max_s,
            logger=self.logger,
        )
        self.logger.debug("duplication.chunk.inserted", chunk_number=chunk_number, inserted=inserted)
        return inserted


class PartsDuplicator(LevelDuplicator):
    model = Part
    stage = DuplicationStage.parts

    @classmethod
    def from_settings(cls, session, *, duplication_id, new_episode_id, settings, logger=None):
        return cls(
            session,
            duplication_id=duplication_id,
            new_episode_id=new_episode_id,
            chunk_size=settings.chunk_size,
            parent_chunk_size=1,
            attempts=settings.transaction_attempts,
            retry_wait_s=settings.transaction_retry_wait_s,
            retry_wait_max_s=settings.transaction_retry_wait_max_s,
            logger=logger,
        )

    def parent_maps(self) -> Iterator[dict[int, int]]:
        row = self.session.execute(
            select(Episode.id, Episode.orig_id).where(
                Episode.id == self.new_episode_id,
                Episode.orig_id.is_not(None),
            )
        ).first()
        if row is not None:
            yield {row.orig_id: row.id}


class ItemsDuplicator(LevelDuplicator):
    model = Item
    stage = DuplicationStage.items

    @classmethod
    def from_settings(cls, session, *, duplication_id, new_episode_id, settings, logger=None):
        return cls(
            session,
            duplication_id=duplication_id,
            new_episode_id=new_episode_id,
            chunk_size=settings.chunk_size,
            parent_chunk_size=settings.outer_chunk_size,
            attempts=settings.transaction_attempts,
            retry_wait_s=settings.transaction_retry_wait_s,
            retry_wait_max_s=settings.transaction_retry_wait_max_s,
            logger=logger,
        )

    def parent_maps(self) -> Iterator[dict[int, int]]:
        parts = duplicated_rows(Part, [self.new_episode_id])
        for rows in iter_chunks(self.session, parts, Part.id, self.parent_chunk_size):
            yield {row.orig_id: row.id for row in rows}


class BlocksDuplicator(LevelDuplicator):
    model = Block
    stage = DuplicationStage.blocks

    @classmethod
    def from_settings(cls, session, *, duplication_id, new_episode_id, settings, logger=None):
        return cls(
            session,
            duplication_id=duplication_id,
            new_episode_id=new_episode_id,
            chunk_size=settings.block_chunk_size,
            parent_chunk_size=settings.chunk_size,
            ancestor_chunk_size=settings.outer_chunk_size,
            attempts=settings.transaction_attempts,
            retry_wait_s=settings.transaction_retry_wait_s,
            retry_wait_max_s=settings.transaction_retry_wait_max_s,
            logger=logger,
        )

    def parent_maps(self) -> Iterator[dict[int, int]]:
        parts = duplicated_rows(Part, [self.new_episode_id])
        for part_rows in iter_chunks(self.session, parts, Part.id, self.ancestor_chunk_size):
            self.stats.ancestor_chunks += 1
            new_part_ids = [row.id for row in part_rows]
            self.logger.debug(
                "duplication.ancestors.chunk",
                ancestor_chunk=self.stats.ancestor_chunks,
                parts_in_chunk=len(new_part_ids),
            )
            items = duplicated_rows(Item, new_part_ids)
            for item_rows in iter_chunks(self.session, items, Item.id, self.parent_chunk_size):
                yield {row.orig_id: row.id for row in item_rows}


class EpisodeDuplicator:
    """Single-row specialisation: copy the episode and record it as the target."""

    stage = DuplicationStage.episode

    def __init__(
        self,
        session: Session,
        *,
        duplication_id: int,
        source_episode_id: int,
        attempts: int = DEFAULT_ATTEMPTS,
        retry_wait_s: float = 0.1,
        retry_wait_max_s: float = 2.0,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.session = session
        self.duplication_id = duplication_id
        self.source_episode_id = source_episode_id
        self.attempts = attempts
        self.retry_wait_s = retry_wait_s
        self.retry_wait_max_s = retry_wait_max_s
        self.logger = logger or structlog.get_logger(__name__)

    @classmethod
    def from_settings(
        cls,
        session: Session,
        *,
        duplication_id: int,
        source_episode_id: int,
        settings: Settings,
        logger: structlog.BoundLogger | None = None,
    ) -> EpisodeDuplicator:
        return cls(
            session,
            duplication_id=duplication_id,
            source_episode_id=source_episode_id,
            attempts=settings.transaction_attempts,
            retry_wait_s=settings.transaction_retry_wait_s,
            retry_wait_max_s=settings.transaction_retry_wait_max_s,
            logger=logger,
        )

    def run(self) -> int:
        """Return the id of the new episode."""
        episode = self.session.get(Episode, self.source_episode_id)
        if episode is None:
            self.logger.error("duplication.episode.not_found", episode_id=self.source_episode_id)
            raise OriginalEpisodeNotFound(self.source_episode_id)

        values = duplicate_row(episode, None)
        self.logger.debug("duplication.episode.loaded", episode_title=episode.title)

        def write(session: Session) -> int:
            new_episode = Episode(**values)
            session.add(new_episode)
            session.flush()
            duplication = session.get(Duplication, self.duplication_id, with_for_update=True, populate_existing=True)
            if duplication is not None:
                duplication.new_episode_id = new_episode.id
                duplication.add_progress(self.stage, 1)
            return new_episode.id

        new_episode_id = run_in_transaction(
            self.session,
            write,
            attempts=self.attempts,
            wait_s=self.retry_wait_s,
            wait_max_s=self.retry_wait_max_s,
            logger=self.logger,
        )
        self.logger.info("duplication.episode.created", new_episode_id=new_episode_id)
        return new_episode_id
