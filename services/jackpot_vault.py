"""Per-tier monthly jackpot vault access"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from models import JackpotVault

logger = logging.getLogger(__name__)


def lock_vault(session: Session, tier_name: str, month_key: str, create: bool = True) -> Optional[JackpotVault]:
    """
    Row-lock the (tier, month) vault for the rest of the transaction.

    Creates an empty vault when none exists and create is True.
    """
    vault = (
        session.query(JackpotVault)
        .filter(JackpotVault.tier_name == tier_name, JackpotVault.month_key == month_key)
        .with_for_update()
        .one_or_none()
    )
    if vault is None and create:
        vault = JackpotVault(
            tier_name=tier_name,
            month_key=month_key,
            total_balance=Decimal("0"),
            total_funded=Decimal("0"),
            total_paid_out=Decimal("0"),
        )
        session.add(vault)
        session.flush()
        logger.info(f"🏦 VAULT: opened {tier_name} vault for {month_key}")
    return vault


def fund_vault(session: Session, tier_name: str, month_key: str, amount: Decimal) -> JackpotVault:
    vault = lock_vault(session, tier_name, month_key)
    vault.total_balance = Decimal(vault.total_balance) + amount
    vault.total_funded = Decimal(vault.total_funded) + amount
    session.flush()
    return vault


def vault_balance(session: Session, tier_name: str, month_key: str) -> Decimal:
    vault = (
        session.query(JackpotVault)
        .filter(JackpotVault.tier_name == tier_name, JackpotVault.month_key == month_key)
        .one_or_none()
    )
    return Decimal(vault.total_balance) if vault else Decimal("0")
