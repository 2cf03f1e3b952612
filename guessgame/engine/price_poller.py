"""Price poller — keeps the price cache fed from CoinGecko.

Every ``price_feed.interval_secs`` it fetches a quote and appends it to
the cache unless it repeats the latest sample. Fetch errors are logged
and the loop carries on.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any

from guessgame.config import AppConfig, load_config
from guessgame.connectors.coingecko import CoinGeckoClient
from guessgame.engine.lifecycle import Clock
from guessgame.observability.logger import get_logger
from guessgame.observability.metrics import metrics
from guessgame.storage.database import Database
from guessgame.storage.models import PriceSample, utcnow

log = get_logger(__name__)


class PricePoller:
    """Fetch-and-cache loop for the upstream price."""

    def __init__(
        self,
        config: AppConfig | None = None,
        db: Database | None = None,
        client: Any = None,
        clock: Clock = utcnow,
    ):
        self.config: AppConfig = config or load_config()
        self._db = db
        self._client = client
        self._clock = clock
        self._running = False
        self._stop_event: asyncio.Event | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def _ensure_resources(self) -> None:
        if self._db is None:
            self._db = Database(self.config.storage)
            self._db.connect()
        if self._client is None:
            self._client = CoinGeckoClient(self.config.price_feed)

    async def poll_once(self) -> PriceSample | None:
        """Fetch one quote and cache it. Returns the new sample, if any."""
        self._ensure_resources()
        assert self._db is not None
        quote = await self._client.get_btc_price()
        sample = self._db.insert_price_if_changed(
            price=quote.price,
            source_updated_at=quote.source_updated_at,
            fetched_at=self._clock(),
        )
        if sample is None:
            metrics.incr("price.unchanged")
            log.debug("price.unchanged", price=quote.price)
        else:
            metrics.incr("price.cached")
            metrics.gauge("price.latest_cents", sample.price)
            log.info("price.cached", sample_id=sample.id, price=sample.price)
        return sample

    async def start(self) -> None:
        self._running = True
        self._stop_event = asyncio.Event()
        self._ensure_resources()
        interval = self.config.price_feed.interval_secs
        log.info("price_poller.starting", interval_secs=interval)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                pass

        try:
            while self._running:
                try:
                    await self.poll_once()
                except Exception as e:
                    metrics.incr("price.fetch_errors")
                    log.error("price.poll_failed", error=str(e))
                if self._running:
                    try:
                        await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                    except asyncio.TimeoutError:
                        pass
        finally:
            await self.close()
            log.info("price_poller.stopped")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    def stop(self) -> None:
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
