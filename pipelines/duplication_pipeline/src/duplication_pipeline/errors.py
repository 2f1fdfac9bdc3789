"""Error taxonomy of the duplication pipeline.

Every class here is fatal for the chain: the stage boundary marks the duplication
`failed` and re-raises. Transient data-layer errors are not wrapped; they surface as
SQLAlchemy exceptions once the transaction retries are exhausted.
"""

from __future__ import annotations


class DuplicationError(RuntimeError):
    """Base class for duplication failures."""


class OriginalEpisodeNotFound(DuplicationError):
    def __init__(self, episode_id: int) -> None:
        self.episode_id = episode_id
        super().__init__(f"Original episode not found: id={episode_id}")


class NewEpisodeIdMissing(DuplicationError):
    """A content stage ran before the episode stage recorded the target episode."""

    def __init__(self, duplication_id: int) -> None:
        self.duplication_id = duplication_id
        super().__init__(f"New episode id not set on duplication: duplication_id={duplication_id}")


class DuplicationNotFound(DuplicationError):
    def __init__(self, duplication_id: int) -> None:
        self.duplication_id = duplication_id
        super().__init__(f"Duplication not found: id={duplication_id}")
