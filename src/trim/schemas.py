"""
Interaction record, run state and trim result schemas.

InteractionRecord is a single like/rating/follow/view row. Rows with no
user_id are anonymous and are the only rows retention trimming may delete.

RunState is the persisted progress marker of an in-flight trim cycle; its
absence means the system is idle.

Usage:
    record = InteractionRecord(chapter_id=42, kind="like", anonymous_uuid="a1b2")
    result = TrimResult(deleted=1000, remaining=120_000, cap=150_000, target=100_000)
"""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

InteractionKind = Literal["like", "dislike", "rating", "follow", "view"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── InteractionRecord ───────────────────────────────────────────────────────


class InteractionRecord(BaseModel):
    """One reader interaction with a chapter or story.

    Usage:
        anon = InteractionRecord(chapter_id=7, kind="view", anonymous_uuid="f00d")
        owned = InteractionRecord(chapter_id=7, kind="like", user_id=12)
    """

    id: int | None = None
    user_id: int | None = None
    chapter_id: int = 0
    kind: InteractionKind = "view"
    value: float | None = None  # rating score, unused for other kinds
    anonymous_uuid: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None


# ── RunState ────────────────────────────────────────────────────────────────


class RunState(BaseModel):
    """Progress of the current trim cycle, replaced wholesale on each write."""

    started_at: datetime = Field(default_factory=_utcnow)
    remaining: int = 0
    scheduled_jobs: int = 0
    updated_at: datetime = Field(default_factory=_utcnow)


# ── Results ─────────────────────────────────────────────────────────────────


class TrimResult(BaseModel):
    """Outcome of one controller or executor activation.

    ``skipped`` is True only when a batch activation found the lease held by
    another activation; in that case ``deleted`` and ``remaining`` are both 0
    and must not be read as "cycle complete".
    """

    deleted: int = 0
    remaining: int = 0
    cap: int = 0
    target: int = 0
    scheduled: int = 0
    skipped: bool = False


class ManualTriggerResult(BaseModel):
    """Operator-facing wrapper around a manually started cycle."""

    success: bool
    message: str
    result: TrimResult

    def to_payload(self) -> dict[str, Any]:
        """Flatten to the admin response shape."""
        return {
            "success": self.success,
            "message": self.message,
            "result": self.result.model_dump(exclude={"skipped"}),
        }
