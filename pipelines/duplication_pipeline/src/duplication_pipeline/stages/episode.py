from __future__ import annotations

import structlog
from sqlalchemy.orm import Session

from episodes_core.db.enums import DuplicationStage
from episodes_core.db.models import Duplication
from duplication_pipeline.levels import EpisodeDuplicator
from duplication_pipeline.stages.base import StageContext, StageJob


class EpisodeStage(StageJob):
    """Copy the source episode row and record the copy as the duplication target."""

    stage = DuplicationStage.episode

    def duplicate(
        self,
        session: Session,
        duplication: Duplication,
        context: StageContext,
        logger: structlog.BoundLogger,
    ) -> int:
        if duplication.new_episode_id is not None:
            # A previous attempt already committed the copy.
            logger.info("duplication.episode.already_copied")
            return 0

        EpisodeDuplicator.from_settings(
            session,
            duplication_id=self.duplication_id,
            source_episode_id=self.source_episode_id,
            settings=context.settings,
            logger=logger,
        ).run()
        return 1
