"""Entry point that starts an episode duplication.

`begin` creates the duplication record and hands the four stages to the worker pool as
one chain. The caller gets the record id back immediately; progress and the terminal
status are read from the record.
"""

from __future__ import annotations

from concurrent.futures import Future

from episodes_core.db.models import Duplication, Episode
from duplication_pipeline.errors import OriginalEpisodeNotFound
from duplication_pipeline.runtime import DuplicationChain, WorkerPool
from duplication_pipeline.stages import BlocksStage, EpisodeStage, ItemsStage, PartsStage, StageContext, StageJob
from duplication_pipeline.stages.base import StageResult, mark_failed

DUPLICATION_CHAIN: tuple[type[StageJob], ...] = (EpisodeStage, PartsStage, ItemsStage, BlocksStage)


class DuplicationOrchestrator:
    def __init__(self, context: StageContext, pool: WorkerPool | None = None) -> None:
        self.context = context
        self.logger = context.logger
        self.pool = pool or WorkerPool(context, failure_handler=self.chain_failed)
        if self.pool.failure_handler is None:
            self.pool.failure_handler = self.chain_failed
        self.pending: dict[int, Future[list[StageResult]]] = {}

    def create_duplication(self, source_episode_id: int) -> int:
        """Insert a `pending` duplication record for an existing episode."""
        with self.context.session_factory() as session:
            if session.get(Episode, source_episode_id) is None:
                self.logger.error("duplication.episode.not_found", episode_id=source_episode_id)
                raise OriginalEpisodeNotFound(source_episode_id)
            duplication = Duplication.for_episode(source_episode_id)
            session.add(duplication)
            session.commit()
            duplication_id = duplication.id

        self.logger.info("duplication.created", duplication_id=duplication_id, source_episode_id=source_episode_id)
        return duplication_id

    def chain_for(self, duplication_id: int, source_episode_id: int) -> DuplicationChain:
        return DuplicationChain(duplication_id, source_episode_id, DUPLICATION_CHAIN)

    def submit(self, source_episode_id: int) -> tuple[int, Future[list[StageResult]]]:
        """Create the record and enqueue the chain; return the id and the chain's future."""
        duplication_id = self.create_duplication(source_episode_id)
        future = self.pool.submit(self.chain_for(duplication_id, source_episode_id))
        # Only running chains are tracked.
        self.pending[duplication_id] = future
        future.add_done_callback(lambda _: self.pending.pop(duplication_id, None))
        return duplication_id, future

    def begin(self, source_episode_id: int) -> int:
        """Create the record, enqueue the chain, and return the duplication id."""
        duplication_id, _ = self.submit(source_episode_id)
        return duplication_id

    def wait(self, duplication_id: int, timeout: float | None = None) -> list[StageResult] | None:
        """
        Block until a running chain finishes; re-raises the error that aborted it.

        Returns None when the chain is no longer running (the record holds its outcome).
        """
        future = self.pending.get(duplication_id)
        if future is None:
            return None
        return future.result(timeout=timeout)

    def chain_failed(self, chain: DuplicationChain, exc: BaseException) -> None:
        # Stage failures already marked the record; errors raised before a stage
        # reached its own handler (e.g. a missing record) have not.
        with self.context.session_factory() as session:
            mark_failed(session, chain.duplication_id)
        self.logger.error(
            "duplication.failed",
            duplication_id=chain.duplication_id,
            source_episode_id=chain.source_episode_id,
            error=str(exc),
            error_class=type(exc).__name__,
        )

    def shutdown(self, wait: bool = True) -> None:
        self.pool.shutdown(wait=wait)
