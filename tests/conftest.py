"""
Shared fixtures for the settlement core test suite

- In-memory SQLite engine with the full schema, one per test
- session / session_factory bound to it
- Default SettlementConfig
- User, tier and oracle factories
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from caching.simple_cache import SimpleCache
from config import SettlementConfig
from models import Base, User, TierName
from services.price_oracle import FreezeState, PriceOracle, PriceSource

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Fixed clock for every scenario: mid-month, mid-morning UTC
NOW = datetime(2026, 3, 15, 9, 0, 0)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def settlement_config():
    return SettlementConfig()


@pytest.fixture
def make_user(db_session, now):
    """Create and flush a user; paid tiers get a subscription running 20 more days"""
    counter = {"n": 0}

    def _make_user(
        tier: str = TierName.FREE.value,
        wallet_balance="0",
        total_coins: int = 0,
        expires_in: Optional[timedelta] = None,
        **fields,
    ) -> User:
        counter["n"] += 1
        if expires_in is None and tier != TierName.FREE.value:
            expires_in = timedelta(days=20)
        user = User(
            telegram_id=1000 + counter["n"],
            username=f"player{counter['n']}",
            tier=tier,
            subscription_expiry=(now + expires_in) if expires_in is not None else None,
            wallet_balance=Decimal(str(wallet_balance)),
            total_coins=total_coins,
            **fields,
        )
        db_session.add(user)
        db_session.flush()
        return user

    return _make_user


@pytest.fixture
def make_oracle(settlement_config):
    """Oracle over fake sources, with sleep mocked out, a private cache and its own freeze flag"""

    def _make_oracle(*sources: PriceSource, freeze_state: Optional[FreezeState] = None) -> PriceOracle:
        return PriceOracle(
            settlement_config,
            sources=list(sources),
            cache=SimpleCache(default_ttl=settlement_config.oracle_cache_ttl_seconds, name="test_btc"),
            sleep=AsyncMock(),
            freeze_state=freeze_state or FreezeState(),
        )

    return _make_oracle
