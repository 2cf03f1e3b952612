"""Expected outcomes of guess operations, surfaced to callers as errors.

Each carries the machine-readable ``code`` returned by the API and the
HTTP status it maps to. None of them is retried by the engine.
"""

from __future__ import annotations

from typing import Any


class GameError(Exception):
    code = "internal_server_error"
    status_code = 500

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code}


class PriceUnavailable(GameError):
    """No price sample has been cached yet (feed cold start)."""
    code = "price_not_available"
    status_code = 403


class ActiveGuessExists(GameError):
    code = "active_guess_exists"
    status_code = 409


class NoActiveGuess(GameError):
    """Already resolved, expired, or never created."""
    code = "no_active_guess"
    status_code = 404


class PriceStale(GameError):
    """Guess consumed without a verdict: price too old or unchanged."""
    code = "price_stale"
    status_code = 403


class ValidationError(GameError):
    code = "validation_error"
    status_code = 422

    def __init__(self, message: str = "", errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "errors": self.errors}


class Unauthorized(GameError):
    code = "unauthorized"
    status_code = 401
