"""Resolution poller — resolves guesses the client never resolved.

Runs on a fixed interval (default 15 seconds). Each cycle:
  1. Find pending guesses older than the game window plus buffer
     (capped at ``poller.batch_size``, newest first)
  2. For each, read the latest cached price and resolve it through the
     same transactional routine as the manual resolve endpoint
  3. Record the cycle summary for the status views

Per-guess failures never abort a batch, and cycle failures never stop
the loop. SIGINT / SIGTERM stop the loop after the in-flight cycle.
"""

from __future__ import annotations

import asyncio
import json
import signal
import time
from dataclasses import dataclass, field
from typing import Any

from guessgame.config import AppConfig, load_config
from guessgame.engine.errors import NoActiveGuess, PriceStale, PriceUnavailable
from guessgame.engine.lifecycle import Clock, GuessEngine
from guessgame.observability.logger import get_logger
from guessgame.observability.metrics import metrics
from guessgame.storage.database import Database
from guessgame.storage.models import GuessRecord, utcnow

log = get_logger(__name__)

STATE_KEY = "resolution_poller"


@dataclass
class PollCycleResult:
    """Summary of one poller cycle."""
    cycle_id: int
    started_at: float
    ended_at: float = 0.0
    duration_secs: float = 0.0
    candidates: int = 0
    resolved: int = 0
    correct: int = 0
    incorrect: int = 0
    voided: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    status: str = "pending"

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


class ResolutionPoller:
    """Periodic background resolution of overdue guesses."""

    def __init__(
        self,
        config: AppConfig | None = None,
        db: Database | None = None,
        clock: Clock = utcnow,
    ):
        self.config: AppConfig = config or load_config()
        self._db = db
        self._clock = clock
        self._engine: GuessEngine | None = None
        self._running = False
        self._stop_event: asyncio.Event | None = None
        self._cycle_count = 0
        self._cycle_history: list[PollCycleResult] = []
        if db is not None:
            self._engine = GuessEngine(db, self.config.game, clock=clock)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def cycle_history(self) -> list[PollCycleResult]:
        return list(self._cycle_history)

    # ── Lifecycle ────────────────────────────────────────────────────

    def _init_db(self) -> None:
        if self._db is not None:
            return
        self._db = Database(self.config.storage)
        self._db.connect()
        self._engine = GuessEngine(self._db, self.config.game, clock=self._clock)
        log.info("poller.db_connected", path=self.config.storage.sqlite_path)

    async def start(self) -> None:
        self._running = True
        self._stop_event = asyncio.Event()
        interval = self.config.poller.interval_secs
        self._init_db()
        log.info(
            "poller.starting",
            interval_secs=interval,
            batch_size=self.config.poller.batch_size,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                pass  # Windows or non-main thread

        while self._running:
            try:
                await self.run_cycle()
            except Exception as e:
                log.exception("poller.cycle_error", error=str(e))
                metrics.incr("poller.cycle_errors")
            if self._running:
                await self._sleep(interval)

        log.info("poller.stopped", total_cycles=self._cycle_count)
        self._persist_state({"running": False})

    async def _sleep(self, seconds: float) -> None:
        """Interval wait that returns early when stop() is called."""
        assert self._stop_event is not None
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def stop(self) -> None:
        log.info("poller.stop_requested")
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("poller.signal_received", signal=sig.name)
        self.stop()

    # ── Cycle ────────────────────────────────────────────────────────

    async def run_cycle(self) -> PollCycleResult:
        """Run one discovery-and-resolve pass."""
        self._init_db()
        assert self._db is not None and self._engine is not None
        self._cycle_count += 1
        cycle = PollCycleResult(cycle_id=self._cycle_count, started_at=time.time())

        try:
            now = self._clock()
            due = self._db.find_due_guesses(
                now=now,
                created_before=now - self._engine.due_after,
                limit=self.config.poller.batch_size,
            )
            cycle.candidates = len(due)
            log.debug("poller.candidates", cycle_id=cycle.cycle_id, count=len(due))

            for guess in due:
                self._resolve_one(guess, cycle)
                await asyncio.sleep(0)  # let signal handlers run between guesses
            cycle.status = "completed"
        except Exception as e:
            cycle.status = "error"
            cycle.errors.append(str(e))
            log.exception("poller.cycle_failed", cycle_id=cycle.cycle_id, error=str(e))

        self._finish_cycle(cycle)
        return cycle

    def _resolve_one(self, guess: GuessRecord, cycle: PollCycleResult) -> None:
        assert self._db is not None and self._engine is not None
        try:
            sample = self._db.get_latest_price()
            result = self._engine.resolve_guess_by_id(guess.id, guess.player_id, sample)
        except PriceUnavailable:
            cycle.skipped += 1
            log.warning("poller.price_unavailable", guess_id=guess.id)
        except NoActiveGuess:
            # Resolved by the player between discovery and our transaction
            cycle.skipped += 1
            log.debug("poller.guess_no_longer_active", guess_id=guess.id)
        except PriceStale:
            cycle.resolved += 1
            cycle.voided += 1
        except Exception as e:
            cycle.errors.append(f"guess {guess.id}: {e}")
            metrics.incr("poller.guess_errors")
            log.exception(
                "poller.guess_error",
                guess_id=guess.id,
                player_id=guess.player_id,
                error=str(e),
            )
        else:
            cycle.resolved += 1
            if result.was_correct:
                cycle.correct += 1
            else:
                cycle.incorrect += 1

    def _finish_cycle(self, cycle: PollCycleResult) -> None:
        cycle.ended_at = time.time()
        cycle.duration_secs = round(cycle.ended_at - cycle.started_at, 3)
        self._cycle_history.append(cycle)
        if len(self._cycle_history) > 100:
            self._cycle_history = self._cycle_history[-50:]

        metrics.incr("poller.cycles")
        metrics.incr("poller.guesses_resolved", cycle.resolved)
        metrics.histogram("poller.cycle_duration_secs", cycle.duration_secs)

        log_fn = log.info if cycle.candidates or cycle.errors else log.debug
        log_fn(
            "poller.cycle_complete",
            cycle_id=cycle.cycle_id,
            duration=cycle.duration_secs,
            candidates=cycle.candidates,
            resolved=cycle.resolved,
            voided=cycle.voided,
            skipped=cycle.skipped,
            errors=len(cycle.errors),
            status=cycle.status,
        )
        self._persist_state()

    def _persist_state(self, extra: dict[str, Any] | None = None) -> None:
        if self._db is None:
            return
        try:
            state = self.get_status()
            if extra:
                state.update(extra)
            self._db.set_engine_state(STATE_KEY, json.dumps(state))
        except Exception as e:
            log.warning("poller.persist_state_error", error=str(e))

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "cycle_count": self._cycle_count,
            "interval_secs": self.config.poller.interval_secs,
            "batch_size": self.config.poller.batch_size,
            "last_cycle": (
                self._cycle_history[-1].to_dict() if self._cycle_history else None
            ),
        }
