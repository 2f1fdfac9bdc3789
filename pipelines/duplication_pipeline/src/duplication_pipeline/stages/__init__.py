from duplication_pipeline.stages.base import (
    StageContext,
    StageJob,
    StageOutcome,
    StageResult,
    mark_failed,
    settings_feature_gate,
)
from duplication_pipeline.stages.content import BlocksStage, ItemsStage, LevelStage, PartsStage
from duplication_pipeline.stages.episode import EpisodeStage

__all__ = [
    "BlocksStage",
    "EpisodeStage",
    "ItemsStage",
    "LevelStage",
    "PartsStage",
    "StageContext",
    "StageJob",
    "StageOutcome",
    "StageResult",
    "mark_failed",
    "settings_feature_gate",
]
