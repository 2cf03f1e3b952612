"""Caller identity for the game API.

Authentication itself happens upstream; the API trusts the identity
header (``X-Player-Id`` by default) set by the gateway and upserts the
matching player on first sight.
"""

from __future__ import annotations

import datetime as dt
from functools import wraps
from typing import Any, Callable

from flask import Request, current_app, g, request

from guessgame.engine.errors import Unauthorized
from guessgame.storage.database import Database
from guessgame.storage.models import PlayerRecord

_MAX_IDENTITY_LEN = 255


def get_authenticated_player(
    req: Request, db: Database, header: str, now: dt.datetime
) -> PlayerRecord:
    """Resolve the caller to a player record, creating it with score 0."""
    external_id = (req.headers.get(header) or "").strip()
    if not external_id or len(external_id) > _MAX_IDENTITY_LEN:
        raise Unauthorized()
    return db.get_or_create_player(external_id, now)


def player_required(view: Callable[..., Any]) -> Callable[..., Any]:
    """Pass the authenticated player to the view as its first argument."""

    @wraps(view)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        cfg = current_app.config["GAME_CONFIG"]
        clock = current_app.config["GAME_CLOCK"]
        player = get_authenticated_player(
            request, g.db, cfg.api.identity_header, clock()
        )
        g.player_id = player.id
        return view(player, *args, **kwargs)

    return wrapper
