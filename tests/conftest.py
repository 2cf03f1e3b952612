"""Shared test fixtures."""

from __future__ import annotations

import datetime as dt
import sys
from pathlib import Path

import pytest

# Ensure the package is importable without installation
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from guessgame.config import AppConfig, StorageConfig  # noqa: E402
from guessgame.storage.database import Database  # noqa: E402

T0 = dt.datetime(2026, 10, 18, 12, 0, 0, tzinfo=dt.timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: dt.datetime = T0):
        self.current = start

    def __call__(self) -> dt.datetime:
        return self.current

    def advance(self, seconds: float) -> dt.datetime:
        self.current = self.current + dt.timedelta(seconds=seconds)
        return self.current


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def app_config(tmp_path) -> AppConfig:
    return AppConfig(storage=StorageConfig(sqlite_path=str(tmp_path / "game.db")))


@pytest.fixture()
def db(app_config):
    database = Database(app_config.storage)
    database.connect()
    yield database
    database.close()
