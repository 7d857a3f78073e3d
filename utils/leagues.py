"""
League weighting

Leagues bucket users by lifetime coins. Each league carries the multiplier
applied to coins earned when a tier's tap pot is shared out.
"""

import logging
from decimal import Decimal
from typing import NamedTuple, Tuple

logger = logging.getLogger(__name__)


class League(NamedTuple):
    name: str
    min_coins: int
    multiplier: Decimal


# Ordered by threshold, ascending
LEAGUES: Tuple[League, ...] = (
    League("BRONZE", 0, Decimal("1.0")),
    League("SILVER", 50_000, Decimal("1.1")),
    League("GOLD", 250_000, Decimal("1.2")),
    League("PLATINUM", 1_000_000, Decimal("1.3")),
    League("DIAMOND", 5_000_000, Decimal("1.5")),
)

DEFAULT_MULTIPLIER = Decimal("1.0")


def compute_league(total_coins: int) -> str:
    """Highest league whose threshold the lifetime coin total has reached"""
    league = LEAGUES[0].name
    for candidate in LEAGUES:
        if total_coins >= candidate.min_coins:
            league = candidate.name
        else:
            break
    return league


def get_league_multiplier(league_name: str) -> Decimal:
    for league in LEAGUES:
        if league.name == league_name:
            return league.multiplier
    return DEFAULT_MULTIPLIER


def refresh_user_league(user) -> str:
    """Recompute the persisted league from lifetime coins; returns the current league"""
    league = compute_league(user.total_coins or 0)
    if user.league != league:
        logger.info(f"🏅 LEAGUE: {user.id} {user.league} -> {league}")
        user.league = league
    return league
