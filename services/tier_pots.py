"""Released-but-undistributed pot balances per (tier, game)"""

from decimal import Decimal

from sqlalchemy.orm import Session

from models import TierPot


def lock_tier_pot(session: Session, tier_name: str, game: str) -> TierPot:
    """Row-lock the pot, creating an empty one on first use"""
    pot = (
        session.query(TierPot)
        .filter(TierPot.tier_name == tier_name, TierPot.game == game)
        .with_for_update()
        .one_or_none()
    )
    if pot is None:
        pot = TierPot(tier_name=tier_name, game=game, pending_amount=Decimal("0"), rollover=Decimal("0"))
        session.add(pot)
        session.flush()
    return pot


def pot_total(pot: TierPot) -> Decimal:
    return Decimal(pot.pending_amount) + Decimal(pot.rollover)


def get_tier_pot(session: Session, tier_name: str, game: str):
    """Unlocked read; None if the pot was never funded"""
    return (
        session.query(TierPot)
        .filter(TierPot.tier_name == tier_name, TierPot.game == game)
        .one_or_none()
    )
