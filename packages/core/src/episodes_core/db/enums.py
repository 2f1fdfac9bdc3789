from __future__ import annotations

import enum


class DuplicationStatus(str, enum.Enum):
    pending = "pending"
    in_progress = "in_progress"
    failed = "failed"
    completed = "completed"


class DuplicationStage(str, enum.Enum):
    episode = "episode"
    parts = "parts"
    items = "items"
    blocks = "blocks"
