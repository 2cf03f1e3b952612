"""Game API — Flask JSON application.

Routes (all /api/* routes need the identity header):
  POST /api/guesses                   — open a guess {"guessDirection": "up"|"down"}
  GET  /api/guesses                   — the player's recent guesses
  GET  /api/guesses/active            — the player's active guess, or {}
  POST /api/guesses/active/resolve    — resolve the active guess now
  GET  /api/me                        — the player's record and score
  GET  /api/price                     — latest cached price
  GET  /api/price/chart               — per-minute average price
  GET  /health, /metrics              — probes, open access

Each request gets its own SQLite connection (``g.db``); all cross-request
guarantees come from the engine's transactions.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

from flask import Flask, g, jsonify, request
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from werkzeug.exceptions import HTTPException

from guessgame.api.auth import player_required
from guessgame.config import AppConfig, load_config
from guessgame.engine.errors import GameError, PriceUnavailable, ValidationError
from guessgame.engine.lifecycle import Clock, GuessEngine
from guessgame.observability.logger import (
    bind_request_context,
    clear_request_context,
    get_logger,
)
from guessgame.observability.metrics import metrics
from guessgame.observability.sentry_integration import init_sentry
from guessgame.storage.database import Database
from guessgame.storage.models import Direction, PlayerRecord, utcnow

log = get_logger(__name__)


class GuessRequest(BaseModel):
    guessDirection: Direction


def create_app(config: AppConfig | None = None, clock: Clock = utcnow) -> Flask:
    """Build the Flask app. Runs migrations once up front."""
    cfg = config or load_config()
    init_sentry()

    app = Flask(__name__)
    app.config["GAME_CONFIG"] = cfg
    app.config["GAME_CLOCK"] = clock

    db = Database(cfg.storage)
    db.connect()
    db.close()

    def _engine() -> GuessEngine:
        return GuessEngine(g.db, cfg.game, clock=clock)

    # ── Request plumbing ────────────────────────────────────────────

    @app.before_request
    def _open_db() -> None:
        bind_request_context(request_id=uuid.uuid4().hex[:12], path=request.path)
        if request.path.startswith("/api/"):
            g.db = Database(cfg.storage)
            g.db.connect(migrate=False)

    @app.after_request
    def _count(response: Any) -> Any:
        metrics.incr(f"api.responses.{response.status_code}")
        return response

    @app.teardown_request
    def _close_db(exc: BaseException | None) -> None:
        request_db = g.pop("db", None)
        if request_db is not None:
            request_db.close()
        clear_request_context()

    @app.errorhandler(GameError)
    def _game_error(e: GameError) -> Any:
        log.info("api.game_error", code=e.code, status=e.status_code)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(Exception)
    def _unexpected(e: Exception) -> Any:
        if isinstance(e, HTTPException):
            return e
        log.exception("api.internal_error", error=str(e))
        return jsonify({"error": "internal_server_error"}), 500

    # ── Probes ──────────────────────────────────────────────────────

    @app.route("/health")
    def health() -> Any:
        return jsonify({"status": "ok", "service": "guessgame"})

    @app.route("/metrics")
    def prometheus_metrics() -> Any:
        return metrics.render_prometheus(), 200, {"Content-Type": "text/plain; charset=utf-8"}

    # ── Guesses ─────────────────────────────────────────────────────

    @app.route("/api/guesses", methods=["POST"])
    @player_required
    def create_guess(player: PlayerRecord) -> Any:
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        try:
            body = GuessRequest.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(errors=json.loads(e.json(include_url=False))) from e

        guess = _engine().create_guess(player, body.guessDirection)
        return jsonify(guess.to_api()), 201

    @app.route("/api/guesses", methods=["GET"])
    @player_required
    def list_guesses(player: PlayerRecord) -> Any:
        limit = request.args.get("limit", cfg.api.history_limit, type=int)
        limit = max(1, min(limit, 100))
        guesses = g.db.get_guesses(player.id, limit=limit)
        return jsonify({"guesses": [x.to_api() for x in guesses]})

    @app.route("/api/guesses/active", methods=["GET"])
    @player_required
    def active_guess(player: PlayerRecord) -> Any:
        if g.db.get_latest_price() is None:
            raise PriceUnavailable()
        guess = _engine().get_active_guess(player)
        if guess is None:
            return jsonify({})
        return jsonify(guess.to_api())

    @app.route("/api/guesses/active/resolve", methods=["POST"])
    @player_required
    def resolve_active_guess(player: PlayerRecord) -> Any:
        sample = g.db.get_latest_price()
        result = _engine().resolve_guess(player, sample)
        return jsonify(result.to_api()), 200

    # ── Player & price ──────────────────────────────────────────────

    @app.route("/api/me")
    @player_required
    def me(player: PlayerRecord) -> Any:
        return jsonify(player.to_api())

    @app.route("/api/price")
    @player_required
    def latest_price(player: PlayerRecord) -> Any:
        sample = g.db.get_latest_price()
        if sample is None:
            return jsonify({"error": "no_price_data_available"}), 503
        return jsonify(sample.to_api())

    @app.route("/api/price/chart")
    @player_required
    def price_chart(player: PlayerRecord) -> Any:
        return jsonify(g.db.get_price_chart(minutes=cfg.api.chart_minutes))

    return app


def run_api(config: AppConfig, debug: bool = False) -> None:
    """Serve the API with Flask's threaded server."""
    app = create_app(config)
    log.info("api.starting", host=config.api.host, port=config.api.port)
    app.run(host=config.api.host, port=config.api.port, debug=debug, threaded=True)
