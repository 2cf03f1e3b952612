"""Guess lifecycle — create and resolve a player's single active guess.

A guess is *active* while ``resolved_at`` is NULL and ``expires_at`` is
in the future. Every check of that predicate that leads to a write runs
in the same ``BEGIN IMMEDIATE`` transaction as the write, so:

  - two concurrent creates for one player cannot both insert
  - a manual resolve and a poller resolve cannot both score the guess;
    the loser re-reads, finds nothing active and gets ``NoActiveGuess``

Resolution outcomes:
  - CORRECT / INCORRECT: price moved strictly in / against the guessed
    direction; score +1 / -1 (floored at 0) in the same transaction
  - VOID: the sample is older than the stale threshold, or the price is
    exactly unchanged; the guess is consumed, score untouched, and the
    caller gets ``PriceStale``
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Callable

from guessgame.config import GameConfig
from guessgame.engine.errors import (
    ActiveGuessExists,
    NoActiveGuess,
    PriceStale,
    PriceUnavailable,
)
from guessgame.observability.logger import get_logger
from guessgame.observability.metrics import metrics
from guessgame.storage.database import Database
from guessgame.storage.models import (
    Direction,
    GuessRecord,
    PlayerRecord,
    PriceSample,
    utcnow,
)

log = get_logger(__name__)

Clock = Callable[[], dt.datetime]


@dataclass
class ResolutionResult:
    """Outcome of a scored resolution."""
    player: PlayerRecord
    was_correct: bool
    guess: GuessRecord

    def to_api(self) -> dict[str, Any]:
        return {
            "player": self.player.to_api(),
            "wasCorrect": self.was_correct,
            "guess": self.guess.to_api(),
        }


def judge(direction: Direction, price_at_guess: int, price: int) -> bool:
    """Strict inequality in the guessed direction wins."""
    if direction is Direction.UP:
        return price > price_at_guess
    return price < price_at_guess


def apply_score(score: int, was_correct: bool) -> int:
    """Score ledger rule: +1 for a win, -1 for a loss, never below zero."""
    if was_correct:
        return score + 1
    return max(score - 1, 0)


class GuessEngine:
    """Creates and resolves guesses against the price cache."""

    def __init__(
        self,
        db: Database,
        config: GameConfig | None = None,
        clock: Clock = utcnow,
    ):
        self._db = db
        self._config = config or GameConfig()
        self._clock = clock

    @property
    def stale_threshold(self) -> dt.timedelta:
        return dt.timedelta(seconds=self._config.stale_price_threshold_secs)

    @property
    def due_after(self) -> dt.timedelta:
        """Age at which the poller takes over resolution of a guess."""
        return dt.timedelta(
            seconds=self._config.resolution_time_secs + self._config.resolution_buffer_secs
        )

    def now(self) -> dt.datetime:
        return self._clock()

    # ── Create ───────────────────────────────────────────────────────

    def create_guess(self, player: PlayerRecord, direction: Direction) -> GuessRecord:
        """Open a new guess at the latest cached price."""
        with self._db.transaction():
            sample = self._db.get_latest_price()
            if sample is None:
                raise PriceUnavailable()

            now = self.now()
            existing = self._db.find_active_guess(player.id, now)
            if existing is not None:
                log.info(
                    "guess.create_rejected",
                    player_id=player.id,
                    active_guess_id=existing.id,
                )
                metrics.incr("guesses.create_conflicts")
                raise ActiveGuessExists(guess_id=existing.id)

            guess = self._db.insert_guess(
                player_id=player.id,
                direction=direction,
                sample=sample,
                created_at=now,
                expires_at=now + self.stale_threshold,
            )

        log.info(
            "guess.created",
            guess_id=guess.id,
            player_id=player.id,
            direction=direction.value,
            price_at_guess=guess.price_at_guess,
        )
        metrics.incr("guesses.created")
        return guess

    def get_active_guess(self, player: PlayerRecord) -> GuessRecord | None:
        return self._db.find_active_guess(player.id, self.now())

    # ── Resolve ──────────────────────────────────────────────────────

    def is_stale(self, sample: PriceSample, now: dt.datetime) -> bool:
        return sample.fetched_at < now - self.stale_threshold

    def resolve_guess(
        self, player: PlayerRecord, current_sample: PriceSample | None
    ) -> ResolutionResult:
        """Resolve the player's active guess (manual path)."""
        return self._resolve(player.id, current_sample)

    def resolve_guess_by_id(
        self, guess_id: int, player_id: int, current_sample: PriceSample | None
    ) -> ResolutionResult:
        """Resolve one specific guess if it is still active (poller path)."""
        return self._resolve(player_id, current_sample, guess_id=guess_id)

    def _resolve(
        self,
        player_id: int,
        sample: PriceSample | None,
        guess_id: int | None = None,
    ) -> ResolutionResult:
        if sample is None:
            raise PriceUnavailable()

        now = self.now()
        stale = self.is_stale(sample, now)
        voided: GuessRecord | None = None

        with self._db.transaction():
            guess = self._db.find_active_guess(player_id, now, guess_id=guess_id)
            if guess is None:
                raise NoActiveGuess(player_id=player_id, guess_id=guess_id)

            if stale or sample.price == guess.price_at_guess:
                self._db.mark_guess_resolved(
                    guess.id,
                    resolved_at=now,
                    price_cache_id_at_resolve=sample.id,
                )
                voided = guess
            else:
                was_correct = judge(guess.direction, guess.price_at_guess, sample.price)
                self._db.mark_guess_resolved(
                    guess.id,
                    resolved_at=now,
                    price_cache_id_at_resolve=sample.id,
                    is_correct=was_correct,
                    price_at_resolve=sample.price,
                )

                player = self._db.get_player(player_id)
                if player is None:
                    raise RuntimeError(f"Player {player_id} not found for guess {guess.id}")
                new_score = apply_score(player.score, was_correct)
                self._db.set_player_score(player_id, new_score, now)

                updated_guess = self._db.get_guess(guess.id)
                updated_player = self._db.get_player(player_id)

        if voided is not None:
            log.info(
                "guess.voided",
                guess_id=voided.id,
                player_id=player_id,
                stale_price=stale,
                price=sample.price,
                price_at_guess=voided.price_at_guess,
            )
            metrics.incr("guesses.resolved.void")
            raise PriceStale(guess_id=voided.id)

        assert updated_guess is not None and updated_player is not None
        log.info(
            "guess.resolved",
            guess_id=updated_guess.id,
            player_id=player_id,
            was_correct=was_correct,
            price_at_guess=updated_guess.price_at_guess,
            price_at_resolve=sample.price,
            score=updated_player.score,
        )
        metrics.incr("guesses.resolved.correct" if was_correct else "guesses.resolved.incorrect")
        return ResolutionResult(player=updated_player, was_correct=was_correct, guess=updated_guess)
