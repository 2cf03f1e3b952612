"""CoinGecko (REST) price connector.

Fetches the BTC/USD spot price from the public ``/simple/price``
endpoint. Prices are converted to integer cents and the upstream
``last_updated_at`` (unix seconds) to an aware UTC datetime.
"""

from __future__ import annotations

import datetime as dt
from typing import Any

import httpx
from pydantic import BaseModel
from tenacity import retry, stop_after_attempt, wait_exponential

from guessgame.config import PriceFeedConfig
from guessgame.observability.logger import get_logger

log = get_logger(__name__)

SIMPLE_PRICE_PATH = "/simple/price"


class PriceQuote(BaseModel):
    """One upstream observation, before it is cached."""
    price: int  # cents
    source_updated_at: dt.datetime


class CoinGeckoError(RuntimeError):
    pass


class CoinGeckoClient:
    """Async client for the CoinGecko simple-price API."""

    def __init__(self, config: PriceFeedConfig | None = None):
        self._config = config or PriceFeedConfig()
        headers = {"Accept": "application/json"}
        api_key = self._config.api_key
        if api_key:
            headers["x-cg-demo-api-key"] = api_key
        self._client = httpx.AsyncClient(
            base_url=self._config.base_url.rstrip("/"),
            timeout=self._config.timeout_secs,
            headers=headers,
        )

    async def close(self) -> None:
        await self._client.aclose()

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        resp = await self._client.get(path, params=params)
        resp.raise_for_status()
        return resp.json()

    async def get_btc_price(self) -> PriceQuote:
        """Fetch the current price of the configured coin."""
        data = await self._get(
            SIMPLE_PRICE_PATH,
            params={
                "ids": self._config.coin_id,
                "vs_currencies": self._config.vs_currency,
                "include_last_updated_at": "true",
                "precision": "2",
            },
        )
        return parse_simple_price(data, self._config.coin_id, self._config.vs_currency)


# ── Parsing helpers ──────────────────────────────────────────────────

def parse_simple_price(data: dict[str, Any], coin_id: str, vs_currency: str) -> PriceQuote:
    """Parse a ``/simple/price`` payload into a PriceQuote."""
    try:
        entry = data[coin_id]
        amount = float(entry[vs_currency])
        updated = int(entry["last_updated_at"])
    except (KeyError, TypeError, ValueError) as e:
        raise CoinGeckoError(f"Unexpected CoinGecko payload: {data!r}") from e
    return PriceQuote(
        price=round(amount * 100),
        source_updated_at=dt.datetime.fromtimestamp(updated, tz=dt.timezone.utc),
    )
