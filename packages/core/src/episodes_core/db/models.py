from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from episodes_core.db.base import Base, BigIntId
from episodes_core.db.enums import DuplicationStage, DuplicationStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContentNode:
    """
    Shared behaviour of the four tree levels (Episode, Part, Item, Block).

    `orig_id` is the provenance link: a non-null value marks the row as a copy of the
    row with that id at the same level. `parent_key` names the column pointing at the
    containing level (None for Episode).
    """

    parent_key = None

    _bookkeeping_columns = frozenset({"id", "orig_id", "created_at", "updated_at"})

    @classmethod
    def payload_columns(cls) -> list[str]:
        skip = set(cls._bookkeeping_columns)
        if cls.parent_key:
            skip.add(cls.parent_key)
        return [column.key for column in cls.__table__.columns if column.key not in skip]  # type: ignore[attr-defined]

    def payload(self) -> dict[str, Any]:
        return {key: getattr(self, key) for key in self.payload_columns()}

    @property
    def is_duplicate(self) -> bool:
        return getattr(self, "orig_id") is not None


class Episode(ContentNode, Base):
    __tablename__ = "episodes"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    orig_id: Mapped[int | None] = mapped_column(
        BigIntId, ForeignKey("episodes.id", ondelete="SET NULL"), nullable=True, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class Part(ContentNode, Base):
    __tablename__ = "parts"

    parent_key = "episode_id"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    episode_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("episodes.id", ondelete="CASCADE"), nullable=False)
    orig_id: Mapped[int | None] = mapped_column(
        BigIntId, ForeignKey("parts.id", ondelete="SET NULL"), nullable=True
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("ix_parts_episode_id", "episode_id"),
        Index("ix_parts_orig_id", "orig_id"),
    )


class Item(ContentNode, Base):
    __tablename__ = "items"

    parent_key = "part_id"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    part_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("parts.id", ondelete="CASCADE"), nullable=False)
    orig_id: Mapped[int | None] = mapped_column(
        BigIntId, ForeignKey("items.id", ondelete="SET NULL"), nullable=True
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("ix_items_part_id", "part_id"),
        Index("ix_items_orig_id", "orig_id"),
    )


class Block(ContentNode, Base):
    __tablename__ = "blocks"

    parent_key = "item_id"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    item_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("items.id", ondelete="CASCADE"), nullable=False)
    orig_id: Mapped[int | None] = mapped_column(
        BigIntId, ForeignKey("blocks.id", ondelete="SET NULL"), nullable=True
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    field_1: Mapped[str | None] = mapped_column(String(255), nullable=True)
    field_2: Mapped[str | None] = mapped_column(String(255), nullable=True)
    field_3: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Reference to a file in object storage; the file itself is shared between copies.
    media: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("ix_blocks_item_id", "item_id"),
        Index("ix_blocks_orig_id", "orig_id"),
    )


class Duplication(Base):
    __tablename__ = "duplications"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    # Source episode.
    episode_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("episodes.id", ondelete="CASCADE"), nullable=False)
    # Set by the episode stage; every later stage reads the target tree through it.
    new_episode_id: Mapped[int | None] = mapped_column(
        BigIntId, ForeignKey("episodes.id", ondelete="CASCADE"), nullable=True
    )
    status: Mapped[DuplicationStatus] = mapped_column(
        Enum(DuplicationStatus, native_enum=False, length=32),
        nullable=False,
        default=DuplicationStatus.pending,
    )
    progress: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (Index("ix_duplications_episode_id", "episode_id"),)

    def add_progress(self, stage: DuplicationStage, increment: int) -> None:
        # Reassign instead of mutating in place so the JSON column is flagged dirty.
        progress = dict(self.progress or {})
        progress[stage.value] = int(progress.get(stage.value, 0)) + increment
        self.progress = progress

    def progress_for(self, stage: DuplicationStage) -> int:
        return int((self.progress or {}).get(stage.value, 0))

    @property
    def stage_progress(self) -> dict[DuplicationStage, int]:
        return {stage: self.progress_for(stage) for stage in DuplicationStage}

    @classmethod
    def for_episode(cls, episode_id: int) -> Duplication:
        return cls(episode_id=episode_id, status=DuplicationStatus.pending, progress={})
