"""
Tier catalogue

Tier prices and daily pool units come from the tiers table, cached in an
injected SimpleCache. When the table is empty or unreadable the values baked
into SettlementConfig are used instead.
"""

import logging
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy.orm import Session

from caching.simple_cache import SimpleCache
from config import SettlementConfig, PAID_TIERS
from models import Tier

logger = logging.getLogger(__name__)

_CACHE_KEY = "tiers:all"


class TierCatalog:
    """Read-mostly view of paid tiers"""

    def __init__(self, config: SettlementConfig, cache: Optional[SimpleCache] = None):
        self.config = config
        self.cache = cache or SimpleCache(default_ttl=config.tier_cache_ttl_seconds, name="tiers")

    def _load(self, session: Session) -> Dict[str, Dict[str, Decimal]]:
        tiers: Dict[str, Dict[str, Decimal]] = {
            name: {
                "price": self.config.tier_prices.get(name, Decimal("0")),
                "daily_unit": self.config.tier_daily_units.get(name, Decimal("0")),
            }
            for name in PAID_TIERS
        }
        try:
            rows = session.query(Tier).filter(Tier.is_active.is_(True)).all()
        except Exception as e:
            logger.warning(f"⚠️ TIER_CATALOG: tiers table read failed, using configured prices: {e}")
            return tiers

        for row in rows:
            if row.name == "FREE":
                continue
            tiers[row.name] = {"price": Decimal(row.price), "daily_unit": Decimal(row.daily_unit)}
        return tiers

    def all_tiers(self, session: Session) -> Dict[str, Dict[str, Decimal]]:
        return self.cache.get_or_load(_CACHE_KEY, lambda: self._load(session))

    def paid_tier_names(self, session: Session):
        return list(self.all_tiers(session).keys())

    def get_price(self, session: Session, tier_name: str) -> Optional[Decimal]:
        tier = self.all_tiers(session).get(tier_name.upper())
        return tier["price"] if tier else None

    def get_daily_unit(self, session: Session, tier_name: str) -> Decimal:
        tier = self.all_tiers(session).get(tier_name.upper())
        return tier["daily_unit"] if tier else Decimal("0")

    def invalidate(self) -> None:
        """Call after editing the tiers table"""
        self.cache.invalidate(_CACHE_KEY)
