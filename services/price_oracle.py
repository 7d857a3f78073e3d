"""
BTC price oracle - multi-source consensus

Queries independent price sources concurrently, each under its own timeout,
and takes the median of whatever answered (the average for 24h change).
Results are cached for a short TTL. fetch_with_retry() walks a backoff
schedule; when it gives up the oracle is frozen, which blocks prediction
submission and settlement until a later fetch succeeds.
"""

import asyncio
import logging
import statistics
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Sequence, Tuple, Dict, Any

import aiohttp

from caching.simple_cache import SimpleCache
from config import Config, SettlementConfig
from services.errors import OracleUnavailableError
from utils.decimal_precision import MonetaryDecimal
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

# Seconds to wait before attempt n (index n); later attempts reuse the last value
BACKOFF_SCHEDULE = (0, 1, 5, 30, 60)

_PRICE_CACHE_KEY = "btc_usd"


class PriceSourceError(Exception):
    """A single source returned nothing usable"""


@dataclass
class OracleResult:
    price: Decimal
    change_24h: Decimal
    sources: List[str]
    median: bool
    fetched_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["price"] = str(self.price)
        data["change_24h"] = str(self.change_24h)
        data["fetched_at"] = self.fetched_at.isoformat()
        return data


@dataclass
class FreezeState:
    frozen: bool = False
    frozen_at: Optional[datetime] = None
    reason: Optional[str] = None

    def freeze(self, reason: str) -> None:
        if not self.frozen:
            self.frozen_at = get_naive_utc_now()
        self.frozen = True
        self.reason = reason

    def clear(self) -> None:
        self.frozen = False
        self.frozen_at = None
        self.reason = None


# Set by a failed settlement price lock, checked by prediction submission
PROCESS_FREEZE_STATE = FreezeState()


class PriceSource:
    """One independently operated BTC/USD feed"""

    name = "source"

    async def fetch(self, http: aiohttp.ClientSession, timeout: aiohttp.ClientTimeout) -> Tuple[Decimal, Decimal]:
        """Return (price_usd, change_24h_percent)"""
        raise NotImplementedError

    @staticmethod
    async def _get_json(http, url, timeout, params=None, headers=None) -> Any:
        async with http.get(url, params=params, headers=headers, timeout=timeout) as response:
            if response.status != 200:
                raise PriceSourceError(f"HTTP {response.status}")
            return await response.json()

    @staticmethod
    def _positive_price(raw) -> Decimal:
        try:
            price = MonetaryDecimal.to_decimal(raw, "btc_price")
        except ValueError as e:
            raise PriceSourceError(f"Unusable price {raw!r}") from e
        if not price.is_finite() or price <= 0:
            raise PriceSourceError(f"Non-finite or non-positive price {raw!r}")
        return price

    @staticmethod
    def _finite_change(raw) -> Decimal:
        try:
            change = MonetaryDecimal.to_decimal(raw or 0, "btc_change_24h")
        except ValueError as e:
            raise PriceSourceError(f"Unusable 24h change {raw!r}") from e
        if not change.is_finite():
            raise PriceSourceError(f"Non-finite 24h change {raw!r}")
        return change


class CoinGeckoSource(PriceSource):
    name = "CoinGecko"
    URL = "https://api.coingecko.com/api/v3/simple/price"

    async def fetch(self, http, timeout):
        data = await self._get_json(
            http,
            self.URL,
            timeout,
            params={"ids": "bitcoin", "vs_currencies": "usd", "include_24hr_change": "true"},
        )
        try:
            bitcoin = data["bitcoin"]
            return self._positive_price(bitcoin["usd"]), self._finite_change(bitcoin.get("usd_24h_change"))
        except (KeyError, TypeError) as e:
            raise PriceSourceError(f"Unexpected CoinGecko payload: {e}") from e


class BinanceSource(PriceSource):
    name = "Binance"
    URL = "https://api.binance.com/api/v3/ticker/24hr"

    async def fetch(self, http, timeout):
        data = await self._get_json(http, self.URL, timeout, params={"symbol": "BTCUSDT"})
        try:
            return self._positive_price(data["lastPrice"]), self._finite_change(data.get("priceChangePercent"))
        except (KeyError, TypeError) as e:
            raise PriceSourceError(f"Unexpected Binance payload: {e}") from e


class CoinMarketCapSource(PriceSource):
    name = "CoinMarketCap"
    URL = "https://pro-api.coinmarketcap.com/v1/cryptocurrency/quotes/latest"

    def __init__(self, api_key: str):
        self.api_key = api_key

    async def fetch(self, http, timeout):
        data = await self._get_json(
            http,
            self.URL,
            timeout,
            params={"symbol": "BTC", "convert": "USD"},
            headers={"X-CMC_PRO_API_KEY": self.api_key, "Accept": "application/json"},
        )
        try:
            quote = data["data"]["BTC"]["quote"]["USD"]
            return self._positive_price(quote["price"]), self._finite_change(quote.get("percent_change_24h"))
        except (KeyError, TypeError) as e:
            raise PriceSourceError(f"Unexpected CoinMarketCap payload: {e}") from e


def default_sources() -> List[PriceSource]:
    sources: List[PriceSource] = [CoinGeckoSource(), BinanceSource()]
    if Config.CMC_API_KEY:
        sources.append(CoinMarketCapSource(Config.CMC_API_KEY))
    return sources


class PriceOracle:
    """Median-of-sources BTC price with retry and freeze state"""

    def __init__(
        self,
        config: SettlementConfig,
        sources: Optional[Sequence[PriceSource]] = None,
        cache: Optional[SimpleCache] = None,
        source_timeout: float = Config.ORACLE_SOURCE_TIMEOUT_SECONDS,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        session_factory: Callable = aiohttp.ClientSession,
        freeze_state: Optional[FreezeState] = None,
    ):
        self.config = config
        self.sources = list(sources) if sources is not None else default_sources()
        self.cache = cache or SimpleCache(default_ttl=config.oracle_cache_ttl_seconds, name="btc_price")
        self.source_timeout = source_timeout
        self._sleep = sleep
        self._clock = clock
        self._session_factory = session_factory
        # Oracles share the process-wide freeze flag unless given their own
        self.freeze_state = freeze_state if freeze_state is not None else PROCESS_FREEZE_STATE

    # ------------------------------------------------------------------
    # Freeze state
    # ------------------------------------------------------------------

    def is_frozen(self) -> bool:
        return self.freeze_state.frozen

    def freeze_info(self) -> Dict[str, Any]:
        return {
            "frozen": self.freeze_state.frozen,
            "frozen_at": self.freeze_state.frozen_at.isoformat() if self.freeze_state.frozen_at else None,
            "reason": self.freeze_state.reason,
        }

    def clear_cache(self) -> None:
        self.cache.invalidate(_PRICE_CACHE_KEY)

    def cached_result(self) -> Optional[OracleResult]:
        return self.cache.get(_PRICE_CACHE_KEY)

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def _query_source(self, source: PriceSource, http) -> Optional[Tuple[str, Decimal, Decimal]]:
        timeout = aiohttp.ClientTimeout(total=self.source_timeout)
        try:
            price, change = await asyncio.wait_for(source.fetch(http, timeout), timeout=self.source_timeout)
            return source.name, PriceSource._positive_price(price), PriceSource._finite_change(change)
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ ORACLE: {source.name} timed out after {self.source_timeout}s")
        except (aiohttp.ClientError, PriceSourceError, ValueError) as e:
            logger.warning(f"⚠️ ORACLE: {source.name} failed: {e}")
        except Exception as e:
            # A broken source is dropped from the round, never allowed to sink it
            logger.error(f"❌ ORACLE: {source.name} raised unexpectedly: {e}", exc_info=True)
        return None

    async def fetch(self) -> OracleResult:
        """One consensus round; raises OracleUnavailableError if no source answered"""
        cached = self.cached_result()
        if cached is not None:
            return cached

        async with self._session_factory() as http:
            answers = await asyncio.gather(*(self._query_source(source, http) for source in self.sources))

        answers = [answer for answer in answers if answer is not None]
        if not answers:
            raise OracleUnavailableError("All BTC price sources failed")

        prices = [price for _, price, _ in answers]
        changes = [change for _, _, change in answers]

        result = OracleResult(
            price=MonetaryDecimal.quantize_usd(statistics.median(prices)),
            change_24h=MonetaryDecimal.quantize_usd(sum(changes) / len(changes)),
            sources=[name for name, _, _ in answers],
            median=len(answers) > 1,
            fetched_at=get_naive_utc_now(),
        )
        self.cache.set(_PRICE_CACHE_KEY, result)

        if self.freeze_state.frozen:
            logger.info(f"✅ ORACLE: price recovered at ${result.price}, predictions unfrozen")
            self.freeze_state.clear()

        logger.info(
            f"✅ ORACLE: BTC ${result.price} ({result.change_24h}%) from {', '.join(result.sources)}"
            f"{' [median]' if result.median else ''}"
        )
        return result

    async def fetch_with_retry(
        self, max_attempts: Optional[int] = None, deadline_seconds: Optional[float] = None
    ) -> OracleResult:
        """
        Retry fetch() on the backoff schedule until success, the attempt
        budget, or the wall-clock deadline. Freezes the oracle and raises
        OracleUnavailableError when every attempt failed.
        """
        max_attempts = max_attempts or self.config.oracle_max_attempts
        deadline_seconds = deadline_seconds if deadline_seconds is not None else self.config.oracle_deadline_seconds
        started = self._clock()
        last_error: Optional[Exception] = None
        attempts = 0

        for attempt in range(max_attempts):
            delay = BACKOFF_SCHEDULE[min(attempt, len(BACKOFF_SCHEDULE) - 1)]
            if self._clock() - started + delay > deadline_seconds:
                logger.warning(f"⚠️ ORACLE: deadline of {deadline_seconds}s reached after {attempts} attempts")
                break
            if delay:
                logger.info(f"🔄 ORACLE: retry {attempt + 1}/{max_attempts} in {delay}s")
                await self._sleep(delay)

            attempts += 1
            try:
                return await self.fetch()
            except OracleUnavailableError as e:
                last_error = e
                logger.warning(f"⚠️ ORACLE: attempt {attempt + 1}/{max_attempts} failed: {e}")

        reason = f"BTC Price Settlement Delayed - no trustworthy price after {attempts} attempts"
        self.freeze_state.freeze(reason)
        logger.error(f"❌ ORACLE: {reason} (last error: {last_error})")
        raise OracleUnavailableError(reason)
