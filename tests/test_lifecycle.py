"""Tests for the guess lifecycle engine:
  - create: price precondition, one-active-guess rule, expiry horizon
  - resolve: correct / incorrect / void outcomes, score ledger, idempotency
  - races: concurrent creates and concurrent resolves from separate connections
"""

from __future__ import annotations

import datetime as dt
import threading

import pytest

from guessgame.config import GameConfig
from guessgame.engine.errors import (
    ActiveGuessExists,
    NoActiveGuess,
    PriceStale,
    PriceUnavailable,
)
from guessgame.engine.lifecycle import GuessEngine, apply_score, judge
from guessgame.storage.database import Database
from guessgame.storage.models import Direction, GuessOutcome


# ── Helpers ──────────────────────────────────────────────────────────

def _engine(db: Database, clock) -> GuessEngine:
    return GuessEngine(db, GameConfig(), clock=clock)


def _price(db: Database, clock, cents: int, age_secs: float = 0.0):
    """Cache a sample observed ``age_secs`` before the clock's now."""
    fetched = clock() - dt.timedelta(seconds=age_secs)
    sample = db.insert_price_if_changed(
        price=cents, source_updated_at=fetched, fetched_at=fetched,
    )
    assert sample is not None
    return sample


def _player(db: Database, clock, external_id: str = "user_123"):
    return db.get_or_create_player(external_id, clock())


# ── Pure rules ───────────────────────────────────────────────────────

class TestRules:
    def test_up_wins_on_strict_rise(self) -> None:
        assert judge(Direction.UP, 50000, 50001) is True
        assert judge(Direction.UP, 50000, 49999) is False

    def test_down_wins_on_strict_fall(self) -> None:
        assert judge(Direction.DOWN, 50000, 49999) is True
        assert judge(Direction.DOWN, 50000, 50001) is False

    def test_score_floor(self) -> None:
        assert apply_score(0, False) == 0
        assert apply_score(3, False) == 2
        assert apply_score(3, True) == 4


# ── Create ───────────────────────────────────────────────────────────

class TestCreateGuess:

    def test_requires_cached_price(self, db, clock) -> None:
        player = _player(db, clock)
        with pytest.raises(PriceUnavailable):
            _engine(db, clock).create_guess(player, Direction.UP)
        assert db.count_guesses() == 0

    def test_snapshots_latest_price(self, db, clock) -> None:
        player = _player(db, clock)
        _price(db, clock, 4_990_000, age_secs=20)
        latest = _price(db, clock, 5_000_000)

        guess = _engine(db, clock).create_guess(player, Direction.DOWN)

        assert guess.price_at_guess == 5_000_000
        assert guess.price_cache_id_at_guess == latest.id
        assert guess.direction is Direction.DOWN
        assert guess.outcome is GuessOutcome.PENDING
        assert guess.created_at == clock()
        assert (guess.expires_at - guess.created_at).total_seconds() == 120

    def test_second_create_conflicts(self, db, clock) -> None:
        player = _player(db, clock)
        _price(db, clock, 5_000_000)
        engine = _engine(db, clock)
        first = engine.create_guess(player, Direction.UP)

        with pytest.raises(ActiveGuessExists):
            engine.create_guess(player, Direction.DOWN)

        assert db.count_guesses(player.id) == 1
        assert engine.get_active_guess(player).id == first.id

    def test_expired_guess_does_not_block(self, db, clock) -> None:
        player = _player(db, clock)
        _price(db, clock, 5_000_000)
        engine = _engine(db, clock)
        engine.create_guess(player, Direction.UP)

        clock.advance(121)
        assert engine.get_active_guess(player) is None
        engine.create_guess(player, Direction.DOWN)
        assert db.count_guesses(player.id) == 2

    def test_players_are_independent(self, db, clock) -> None:
        alice = _player(db, clock, "alice")
        bob = _player(db, clock, "bob")
        _price(db, clock, 5_000_000)
        engine = _engine(db, clock)

        engine.create_guess(alice, Direction.UP)
        engine.create_guess(bob, Direction.UP)
        assert db.count_guesses() == 2


# ── Resolve ──────────────────────────────────────────────────────────

class TestResolveGuess:

    def test_correct_up_scores(self, db, clock) -> None:
        player = _player(db, clock)
        _price(db, clock, 50000)
        engine = _engine(db, clock)
        engine.create_guess(player, Direction.UP)

        clock.advance(60)
        sample = _price(db, clock, 50500)
        result = engine.resolve_guess(player, sample)

        assert result.was_correct is True
        assert result.player.score == 1
        assert result.guess.outcome is GuessOutcome.CORRECT
        assert result.guess.is_correct == 1
        assert result.guess.price_at_resolve == 50500
        assert result.guess.price_cache_id_at_resolve == sample.id
        assert result.guess.resolved_at == clock()

    def test_correct_down_scores(self, db, clock) -> None:
        player = _player(db, clock)
        _price(db, clock, 50000)
        engine = _engine(db, clock)
        engine.create_guess(player, Direction.DOWN)

        clock.advance(60)
        result = engine.resolve_guess(player, _price(db, clock, 49500))

        assert result.was_correct is True
        assert result.player.score == 1
        assert result.guess.is_correct == 1

    def test_incorrect_down_clamps_at_zero(self, db, clock) -> None:
        player = _player(db, clock)
        _price(db, clock, 50000)
        engine = _engine(db, clock)
        engine.create_guess(player, Direction.DOWN)

        clock.advance(60)
        result = engine.resolve_guess(player, _price(db, clock, 50500))

        assert result.was_correct is False
        assert result.player.score == 0
        assert result.guess.is_correct == 0
        assert result.guess.outcome is GuessOutcome.INCORRECT
        assert result.guess.price_at_resolve == 50500

    def test_repeated_losses_never_go_negative(self, db, clock) -> None:
        player = _player(db, clock)
        engine = _engine(db, clock)
        price = 50000
        _price(db, clock, price)
        for _ in range(3):
            engine.create_guess(player, Direction.UP)
            clock.advance(60)
            price -= 100
            result = engine.resolve_guess(player, _price(db, clock, price))
            assert result.was_correct is False
        assert db.get_player(player.id).score == 0

    def test_loss_decrements_positive_score(self, db, clock) -> None:
        player = _player(db, clock)
        engine = _engine(db, clock)
        db.set_player_score(player.id, 5, clock())

        _price(db, clock, 50000)
        engine.create_guess(player, Direction.UP)
        clock.advance(60)
        result = engine.resolve_guess(player, _price(db, clock, 49000))
        assert result.player.score == 4

    @pytest.mark.parametrize("direction", [Direction.UP, Direction.DOWN])
    def test_unchanged_price_is_void(self, db, clock, direction) -> None:
        player = _player(db, clock)
        sample = _price(db, clock, 50000)
        engine = _engine(db, clock)
        guess = engine.create_guess(player, direction)

        clock.advance(60)
        with pytest.raises(PriceStale):
            engine.resolve_guess(player, sample)

        stored = db.get_guess(guess.id)
        assert stored.resolved_at == clock()
        assert stored.outcome is GuessOutcome.VOID
        assert stored.is_correct is None
        assert stored.price_at_resolve is None
        assert stored.price_cache_id_at_resolve == sample.id
        assert db.get_player(player.id).score == 0

    def test_old_sample_is_void_and_consumes_guess(self, db, clock) -> None:
        player = _player(db, clock)
        _price(db, clock, 50000)
        engine = _engine(db, clock)
        guess = engine.create_guess(player, Direction.UP)

        clock.advance(60)
        old = _price(db, clock, 51000, age_secs=121)
        with pytest.raises(PriceStale):
            engine.resolve_guess(player, old)

        stored = db.get_guess(guess.id)
        assert stored.resolved_at is not None
        assert stored.price_at_resolve is None
        assert engine.get_active_guess(player) is None
        with pytest.raises(NoActiveGuess):
            engine.resolve_guess(player, _price(db, clock, 52000))

    def test_missing_sample(self, db, clock) -> None:
        player = _player(db, clock)
        with pytest.raises(PriceUnavailable):
            _engine(db, clock).resolve_guess(player, None)

    def test_no_active_guess(self, db, clock) -> None:
        player = _player(db, clock)
        sample = _price(db, clock, 50000)
        with pytest.raises(NoActiveGuess):
            _engine(db, clock).resolve_guess(player, sample)

    def test_resolving_twice_scores_once(self, db, clock) -> None:
        player = _player(db, clock)
        _price(db, clock, 50000)
        engine = _engine(db, clock)
        engine.create_guess(player, Direction.UP)

        clock.advance(60)
        sample = _price(db, clock, 50500)
        engine.resolve_guess(player, sample)
        with pytest.raises(NoActiveGuess):
            engine.resolve_guess(player, sample)

        assert db.get_player(player.id).score == 1

    def test_stale_caller_copy_of_player_is_ignored(self, db, clock) -> None:
        player = _player(db, clock)
        engine = _engine(db, clock)
        db.set_player_score(player.id, 7, clock())  # player object still says 0

        _price(db, clock, 50000)
        engine.create_guess(player, Direction.UP)
        clock.advance(60)
        result = engine.resolve_guess(player, _price(db, clock, 50100))
        assert result.player.score == 8

    def test_resolve_by_id_only_touches_that_guess(self, db, clock) -> None:
        player = _player(db, clock)
        _price(db, clock, 50000)
        engine = _engine(db, clock)
        guess = engine.create_guess(player, Direction.UP)

        clock.advance(60)
        sample = _price(db, clock, 50100)
        with pytest.raises(NoActiveGuess):
            engine.resolve_guess_by_id(guess.id + 1, player.id, sample)
        result = engine.resolve_guess_by_id(guess.id, player.id, sample)
        assert result.guess.id == guess.id


# ── Races across connections ─────────────────────────────────────────

def _second_connection(app_config) -> Database:
    other = Database(app_config.storage)
    other.connect(migrate=False)
    return other


class TestConcurrency:

    def test_concurrent_creates_insert_one_row(self, db, clock, app_config) -> None:
        player = _player(db, clock)
        _price(db, clock, 50000)
        dbs = [_second_connection(app_config) for _ in range(4)]
        barrier = threading.Barrier(len(dbs))
        outcomes: list[str] = []
        lock = threading.Lock()

        def worker(conn_db: Database) -> None:
            engine = GuessEngine(conn_db, GameConfig(), clock=clock)
            barrier.wait()
            try:
                engine.create_guess(player, Direction.UP)
                result = "created"
            except ActiveGuessExists:
                result = "conflict"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker, args=(d,)) for d in dbs]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        for d in dbs:
            d.close()

        assert sorted(outcomes) == ["conflict", "conflict", "conflict", "created"]
        assert db.count_guesses(player.id) == 1

    def test_concurrent_resolves_score_once(self, db, clock, app_config) -> None:
        player = _player(db, clock)
        _price(db, clock, 50000)
        _engine(db, clock).create_guess(player, Direction.UP)
        clock.advance(60)
        sample = _price(db, clock, 50500)

        dbs = [_second_connection(app_config) for _ in range(2)]
        barrier = threading.Barrier(len(dbs))
        outcomes: list[str] = []
        lock = threading.Lock()

        def worker(conn_db: Database) -> None:
            engine = GuessEngine(conn_db, GameConfig(), clock=clock)
            barrier.wait()
            try:
                engine.resolve_guess(player, sample)
                result = "resolved"
            except NoActiveGuess:
                result = "no_active_guess"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker, args=(d,)) for d in dbs]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        for d in dbs:
            d.close()

        assert sorted(outcomes) == ["no_active_guess", "resolved"]
        assert db.get_player(player.id).score == 1
