"""
BTC price oracle: median consensus, retry, freeze and cache control
"""

import asyncio
import json
from decimal import Decimal
from unittest.mock import AsyncMock

import aiohttp
import pytest

from services.errors import OracleUnavailableError, PredictionsFrozenError
from services.prediction_service import PredictionService
from services.price_oracle import (
    PriceOracle, PriceSourceError, CoinGeckoSource, FreezeState, BACKOFF_SCHEDULE, PROCESS_FREEZE_STATE
)
from tests.fixtures import FakeSource


class TestConsensus:

    @pytest.mark.asyncio
    async def test_three_sources_median(self, make_oracle):
        oracle = make_oracle(
            FakeSource("CoinGecko", 95000, "1.5"),
            FakeSource("Binance", 95200, "2.0"),
            FakeSource("CoinMarketCap", 94800, "1.0"),
        )
        result = await oracle.fetch()

        assert result.price == Decimal("95000.00")
        assert result.median is True, "More than one answering source means a median price"
        assert result.change_24h == Decimal("1.50")
        assert set(result.sources) == {"CoinGecko", "Binance", "CoinMarketCap"}

    @pytest.mark.asyncio
    async def test_single_source_not_median(self, make_oracle):
        oracle = make_oracle(
            FakeSource("CoinGecko", 95000),
            FakeSource("Binance", error=PriceSourceError("HTTP 500")),
        )
        result = await oracle.fetch()

        assert result.price == Decimal("95000.00")
        assert result.median is False
        assert result.sources == ["CoinGecko"]

    @pytest.mark.asyncio
    async def test_even_source_count_averages_middle(self, make_oracle):
        oracle = make_oracle(FakeSource("a", 100), FakeSource("b", 101))
        result = await oracle.fetch()
        assert result.price == Decimal("100.50")

    @pytest.mark.asyncio
    async def test_timeouts_and_client_errors_are_skipped(self, make_oracle):
        oracle = make_oracle(
            FakeSource("slow", error=asyncio.TimeoutError()),
            FakeSource("broken", error=aiohttp.ClientError("connection reset")),
            FakeSource("ok", 90000),
        )
        result = await oracle.fetch()
        assert result.sources == ["ok"]

    @pytest.mark.asyncio
    async def test_all_sources_fail(self, make_oracle):
        oracle = make_oracle(FakeSource("a", error=PriceSourceError("down")))
        with pytest.raises(OracleUnavailableError):
            await oracle.fetch()

    @pytest.mark.asyncio
    async def test_nan_price_from_one_source_is_dropped(self, make_oracle):
        coingecko = CoinGeckoSource()
        coingecko._get_json = AsyncMock(return_value=json.loads('{"bitcoin": {"usd": NaN, "usd_24h_change": 1.2}}'))
        oracle = make_oracle(
            coingecko,
            FakeSource("Binance", 95200),
            FakeSource("CoinMarketCap", 94800),
        )

        result = await oracle.fetch()

        assert result.price == Decimal("95000.00")
        assert set(result.sources) == {"Binance", "CoinMarketCap"}

    @pytest.mark.asyncio
    async def test_non_finite_change_is_dropped(self, make_oracle):
        oracle = make_oracle(FakeSource("inf", 95000, "Infinity"), FakeSource("ok", 90000))

        result = await oracle.fetch()

        assert result.sources == ["ok"]
        assert result.change_24h == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_unexpected_source_error_is_dropped(self, make_oracle):
        oracle = make_oracle(FakeSource("buggy", error=ZeroDivisionError("bad parse")), FakeSource("ok", 90000))

        result = await oracle.fetch()

        assert result.sources == ["ok"]


class TestCache:

    @pytest.mark.asyncio
    async def test_result_cached_until_cleared(self, make_oracle):
        source = FakeSource("a", 90000)
        oracle = make_oracle(source)

        await oracle.fetch()
        await oracle.fetch()
        assert source.fetch.await_count == 1, "Second fetch should be served from cache"

        oracle.clear_cache()
        assert oracle.cached_result() is None
        await oracle.fetch()
        assert source.fetch.await_count == 2


class TestRetryAndFreeze:

    @pytest.mark.asyncio
    async def test_retries_until_success(self, make_oracle):
        source = FakeSource("a")
        source.fetch = AsyncMock(side_effect=[
            PriceSourceError("down"),
            PriceSourceError("down"),
            (Decimal("91000"), Decimal("0")),
        ])
        oracle = make_oracle(source)

        result = await oracle.fetch_with_retry()

        assert result.price == Decimal("91000.00")
        assert source.fetch.await_count == 3
        delays = [call.args[0] for call in oracle._sleep.await_args_list]
        assert delays == list(BACKOFF_SCHEDULE[1:3])
        assert not oracle.is_frozen()

    @pytest.mark.asyncio
    async def test_exhausted_retries_freeze(self, make_oracle):
        source = FakeSource("a", error=PriceSourceError("down"))
        oracle = make_oracle(source)

        with pytest.raises(OracleUnavailableError):
            await oracle.fetch_with_retry(max_attempts=3)

        assert source.fetch.await_count == 3
        assert oracle.is_frozen()
        info = oracle.freeze_info()
        assert info["frozen"] is True
        assert info["frozen_at"] is not None

    @pytest.mark.asyncio
    async def test_deadline_stops_retries(self, make_oracle):
        source = FakeSource("a", error=PriceSourceError("down"))
        oracle = make_oracle(source)

        with pytest.raises(OracleUnavailableError):
            await oracle.fetch_with_retry(max_attempts=5, deadline_seconds=3)

        # Attempt 1 (no delay) and 2 (1s) fit the deadline; attempt 3 would wait 5s
        assert source.fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_successful_fetch_unfreezes(self, make_oracle):
        source = FakeSource("a", error=PriceSourceError("down"))
        oracle = make_oracle(source)
        with pytest.raises(OracleUnavailableError):
            await oracle.fetch_with_retry(max_attempts=1)
        assert oracle.is_frozen()

        source.fetch = AsyncMock(return_value=(Decimal("92000"), Decimal("0")))
        await oracle.fetch()
        assert not oracle.is_frozen()
        assert oracle.freeze_info()["frozen_at"] is None

    @pytest.mark.asyncio
    async def test_nan_only_source_freezes(self, make_oracle):
        coingecko = CoinGeckoSource()
        coingecko._get_json = AsyncMock(return_value=json.loads('{"bitcoin": {"usd": NaN}}'))
        oracle = make_oracle(coingecko)

        with pytest.raises(OracleUnavailableError):
            await oracle.fetch_with_retry(max_attempts=2)

        assert coingecko._get_json.await_count == 2
        assert oracle.is_frozen()

    @pytest.mark.asyncio
    async def test_freeze_shared_between_oracles(self, make_oracle):
        shared = FreezeState()
        settling = make_oracle(FakeSource("a", error=PriceSourceError("down")), freeze_state=shared)
        serving = make_oracle(FakeSource("b", 95000), freeze_state=shared)

        with pytest.raises(OracleUnavailableError):
            await settling.fetch_with_retry(max_attempts=1)

        assert serving.is_frozen(), "A freeze set by one oracle must be seen by every oracle sharing the flag"

    def test_default_freeze_flag_is_process_wide(self, settlement_config):
        assert PriceOracle(settlement_config, sources=[]).freeze_state is PROCESS_FREEZE_STATE


class TestPredictionSubmission:

    @pytest.mark.asyncio
    async def test_records_price(self, db_session, make_user, make_oracle, now):
        user = make_user(tier="SILVER")
        service = PredictionService(make_oracle(FakeSource("a", 95000)))

        prediction = await service.submit_prediction(db_session, user.id, "Higher", now=now)

        assert prediction.direction == "higher"
        assert prediction.tier_name == "SILVER"
        assert prediction.price_at_prediction == Decimal("95000.00")

    @pytest.mark.asyncio
    async def test_rejected_while_frozen(self, db_session, make_user, make_oracle):
        user = make_user()
        oracle = make_oracle(FakeSource("a", 95000))
        oracle.freeze_state.freeze("test outage")

        with pytest.raises(PredictionsFrozenError):
            await PredictionService(oracle).submit_prediction(db_session, user.id, "higher")

    @pytest.mark.asyncio
    async def test_one_open_prediction_per_user(self, db_session, make_user, make_oracle, now):
        from services.errors import PredictionError

        user = make_user()
        service = PredictionService(make_oracle(FakeSource("a", 95000)))
        await service.submit_prediction(db_session, user.id, "lower", now=now)

        with pytest.raises(PredictionError):
            await service.submit_prediction(db_session, user.id, "higher", now=now)

    @pytest.mark.asyncio
    async def test_invalid_direction(self, db_session, make_user, make_oracle):
        from services.errors import PredictionError

        user = make_user()
        with pytest.raises(PredictionError):
            await PredictionService(make_oracle(FakeSource("a", 1))).submit_prediction(db_session, user.id, "sideways")
