"""Database models — Pydantic models for storage records.

Direction and outcome are enums at this boundary; the signed-integer
direction and the 1/0/NULL ``is_correct`` flag are storage encodings
handled by ``from_row`` / ``to_api``.
"""

from __future__ import annotations

import datetime as dt
import enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Direction(str, enum.Enum):
    UP = "up"
    DOWN = "down"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.UP else -1

    @classmethod
    def from_sign(cls, value: int) -> Direction:
        if value == 1:
            return cls.UP
        if value == -1:
            return cls.DOWN
        raise ValueError(f"Invalid stored guess direction: {value!r}")


class GuessOutcome(str, enum.Enum):
    PENDING = "pending"
    CORRECT = "correct"
    INCORRECT = "incorrect"
    VOID = "void"  # resolved against a stale or unchanged price


class PriceSample(BaseModel):
    """Cached price observation. Immutable once written."""
    id: int
    price: int  # cents
    fetched_at: dt.datetime
    source_updated_at: dt.datetime

    @property
    def price_usd(self) -> float:
        return self.price / 100

    def to_api(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class PlayerRecord(BaseModel):
    id: int
    external_id: str
    score: int = 0
    created_at: dt.datetime = Field(default_factory=utcnow)
    updated_at: dt.datetime = Field(default_factory=utcnow)

    def to_api(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class GuessRecord(BaseModel):
    """One prediction and its resolution."""
    id: int
    player_id: int
    direction: Direction
    price_at_guess: int
    price_cache_id_at_guess: int | None = None
    created_at: dt.datetime
    expires_at: dt.datetime
    resolved_at: dt.datetime | None = None
    outcome: GuessOutcome = GuessOutcome.PENDING
    price_at_resolve: int | None = None
    price_cache_id_at_resolve: int | None = None

    @classmethod
    def from_row(cls, row: Any) -> GuessRecord:
        data = dict(row)
        is_correct = data.pop("is_correct")
        data["direction"] = Direction.from_sign(data.pop("guess_direction"))
        if data["resolved_at"] is None:
            data["outcome"] = GuessOutcome.PENDING
        elif is_correct is None:
            data["outcome"] = GuessOutcome.VOID
        else:
            data["outcome"] = GuessOutcome.CORRECT if is_correct else GuessOutcome.INCORRECT
        return cls(**data)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    @property
    def is_correct(self) -> int | None:
        """Storage view of the outcome: 1, 0 or None."""
        if self.outcome is GuessOutcome.CORRECT:
            return 1
        if self.outcome is GuessOutcome.INCORRECT:
            return 0
        return None

    def is_active(self, now: dt.datetime) -> bool:
        return self.resolved_at is None and self.expires_at > now

    def to_api(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["guess_direction"] = self.direction.sign
        data["is_correct"] = self.is_correct
        return data
