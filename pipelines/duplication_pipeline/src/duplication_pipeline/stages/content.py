from __future__ import annotations

from typing import ClassVar

import structlog
from sqlalchemy.orm import Session

from episodes_core.db.enums import DuplicationStage
from episodes_core.db.models import Duplication
from duplication_pipeline.errors import NewEpisodeIdMissing
from duplication_pipeline.levels import BlocksDuplicator, ItemsDuplicator, LevelDuplicator, PartsDuplicator
from duplication_pipeline.stages.base import StageContext, StageJob


class LevelStage(StageJob):
    """Stage job running one level duplicator under the target episode."""

    duplicator: ClassVar[type[LevelDuplicator]]

    def duplicate(
        self,
        session: Session,
        duplication: Duplication,
        context: StageContext,
        logger: structlog.BoundLogger,
    ) -> int:
        new_episode_id = duplication.new_episode_id
        if new_episode_id is None:
            logger.error("duplication.new_episode_id.missing")
            raise NewEpisodeIdMissing(self.duplication_id)

        duplicator = self.duplicator.from_settings(
            session,
            duplication_id=self.duplication_id,
            new_episode_id=new_episode_id,
            settings=context.settings,
            logger=logger,
        )
        logger.info(
            "duplication.level.started",
            chunk_size=duplicator.chunk_size,
            parent_chunk_size=duplicator.parent_chunk_size,
        )
        stats = duplicator.run()
        logger.info("duplication.level.finished", **stats.as_log())
        return stats.inserted


class PartsStage(LevelStage):
    stage = DuplicationStage.parts
    duplicator = PartsDuplicator


class ItemsStage(LevelStage):
    stage = DuplicationStage.items
    duplicator = ItemsDuplicator


class BlocksStage(LevelStage):
    stage = DuplicationStage.blocks
    duplicator = BlocksDuplicator
    final = True
