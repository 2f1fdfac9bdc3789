"""Stage job harness shared by the four duplication stages.

A stage job carries only ids. Everything else (the duplication record, the target
episode id, the parent remaps) is reloaded from the database when the job runs, so a
job can be retried or executed on another worker without any state surviving from a
previous attempt.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import ClassVar

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from episodes_core.db.enums import DuplicationStage, DuplicationStatus
from episodes_core.db.models import Duplication
from episodes_core.db.session import session_factory as default_session_factory
from episodes_core.logging import get_logger
from duplication_pipeline.errors import DuplicationNotFound
from duplication_pipeline.settings import Settings, get_settings

FeatureGate = Callable[[], bool]


class StageOutcome(str, enum.Enum):
    completed = "completed"
    # Status gate closed (failed/completed): nothing was done.
    skipped = "skipped"
    # Feature gate closed: run the same stage again after `release_after_s`.
    deferred = "deferred"


@dataclass(frozen=True)
class StageResult:
    stage: DuplicationStage
    outcome: StageOutcome
    inserted: int = 0
    release_after_s: float | None = None


def settings_feature_gate(settings: Settings) -> FeatureGate:
    return lambda: settings.duplication_enabled


@dataclass
class StageContext:
    """Collaborators a stage job needs; built once per worker process."""

    session_factory: sessionmaker[Session]
    settings: Settings
    logger: structlog.BoundLogger
    feature_gate: FeatureGate

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        session_factory: sessionmaker[Session] | None = None,
        logger: structlog.BoundLogger | None = None,
        feature_gate: FeatureGate | None = None,
    ) -> StageContext:
        settings = settings or get_settings()
        return cls(
            session_factory=session_factory or default_session_factory(),
            settings=settings,
            logger=logger or get_logger("duplication"),
            feature_gate=feature_gate or settings_feature_gate(settings),
        )


def mark_failed(session: Session, duplication_id: int) -> None:
    session.execute(
        update(Duplication).where(Duplication.id == duplication_id).values(status=DuplicationStatus.failed)
    )
    session.commit()


class StageJob(ABC):
    stage: ClassVar[DuplicationStage]
    # The last stage of the chain moves the record to `completed`.
    final: ClassVar[bool] = False

    def __init__(self, duplication_id: int, source_episode_id: int) -> None:
        self.duplication_id = duplication_id
        self.source_episode_id = source_episode_id

    def __repr__(self) -> str:
        return f"{type(self).__name__}(duplication_id={self.duplication_id}, source_episode_id={self.source_episode_id})"

    def bind_logger(self, logger: structlog.BoundLogger) -> structlog.BoundLogger:
        return logger.bind(
            duplication_id=self.duplication_id,
            source_episode_id=self.source_episode_id,
            stage=self.stage.value,
            job_class=type(self).__name__,
        )

    def handle(self, context: StageContext) -> StageResult:
        logger = self.bind_logger(context.logger)

        with context.session_factory() as session:
            duplication = session.get(Duplication, self.duplication_id)
            if duplication is None:
                logger.error("duplication.not_found")
                raise DuplicationNotFound(self.duplication_id)
            if duplication.new_episode_id is not None:
                logger = logger.bind(new_episode_id=duplication.new_episode_id)

            if not context.feature_gate():
                logger.info("duplication.stage.deferred", release_after_s=context.settings.release_delay_s)
                return StageResult(
                    self.stage,
                    StageOutcome.deferred,
                    release_after_s=context.settings.release_delay_s,
                )

            if not self._enter(session, duplication, logger):
                return StageResult(self.stage, StageOutcome.skipped)

            try:
                logger.info("duplication.stage.started")
                inserted = self.duplicate(session, duplication, context, logger)
                if self.final:
                    self._complete(session, duplication, logger)
            except Exception as exc:
                logger.error(
                    "duplication.stage.failed",
                    error=str(exc),
                    error_class=type(exc).__name__,
                    exc_info=exc,
                )
                try:
                    session.rollback()
                    mark_failed(session, self.duplication_id)
                except Exception as mark_exc:
                    # The stage error is the one the chain reports.
                    logger.error(
                        "duplication.status.mark_failed_error",
                        error=str(mark_exc),
                        error_class=type(mark_exc).__name__,
                        exc_info=mark_exc,
                    )
                raise

        logger.info("duplication.stage.finished", inserted=inserted)
        return StageResult(self.stage, StageOutcome.completed, inserted=inserted)

    def _enter(self, session: Session, duplication: Duplication, logger: structlog.BoundLogger) -> bool:
        """Apply the status gate; return False when the chain is dead for this record."""
        status = duplication.status
        if status is DuplicationStatus.pending:
            duplication.status = DuplicationStatus.in_progress
            session.commit()
            logger.info("duplication.status.transition", from_status="pending", to_status="in_progress")
            return True
        if status is DuplicationStatus.in_progress:
            return True
        if status is DuplicationStatus.failed or status is DuplicationStatus.completed:
            logger.info("duplication.stage.stopped", current_status=status.value)
            return False
        raise AssertionError(f"Unhandled duplication status: {status!r}")

    def _complete(self, session: Session, duplication: Duplication, logger: structlog.BoundLogger) -> None:
        duplication.status = DuplicationStatus.completed
        session.commit()
        logger.info(
            "duplication.completed",
            new_episode_id=duplication.new_episode_id,
            progress=dict(duplication.progress or {}),
        )

    @abstractmethod
    def duplicate(
        self,
        session: Session,
        duplication: Duplication,
        context: StageContext,
        logger: structlog.BoundLogger,
    ) -> int:
        """Copy this stage's level; return the number of rows inserted."""
