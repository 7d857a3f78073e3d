"""
Settlement Engine

Daily cycle, tier by tier:

1. Tap-pot distribution: the tier's released tap pot (drip releases plus
   rollover) is shared among active subscribers in proportion to the coins
   they earned in the previous UTC day, each weighted by league multiplier.
   No coins earned means no distribution; the pot carries forward.
2. Prediction resolution: every unresolved prediction older than the
   maturity window is resolved against the locked BTC price. Winners split
   the tier's prediction pot evenly; with no winners (or no subscribers) the
   whole pot rolls over.

Shares are rounded down to the money unit, so the payouts of a tier never
exceed its pot; the rounding residue stays in rollover.

The BTC price is locked first. If the oracle cannot produce a trustworthy
price the whole cycle is aborted and the oracle stays frozen. Each step writes
a settlement_runs row keyed by (run_type, cycle_key) in the same transaction
as its payouts, so a cycle is never settled twice.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import SettlementConfig
from models import (
    User, DailyTap, Prediction, SettlementRun, SettlementRunType, PoolGame,
    PredictionDirection, LedgerEntryType, LedgerDirection, LedgerCurrency
)
from services.errors import OracleUnavailableError
from services.jackpot_vault import vault_balance
from services.ledger_service import LedgerService, pool_account
from services.notification_sink import NotificationSink, LoggingNotificationSink, safe_publish
from services.price_oracle import PriceOracle
from services.tier_catalog import TierCatalog
from services.tier_pots import lock_tier_pot, get_tier_pot
from services.wallet_service import WalletService
from utils.decimal_precision import MonetaryDecimal
from utils.datetime_helpers import get_naive_utc_now, month_key, period_key, previous_period_key
from utils.leagues import get_league_multiplier, refresh_user_league

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class SettlementSummary:
    """Per-tier outcome of one settlement step"""
    tier_name: str
    active_users: int
    daily_allocation: Decimal
    rollover: Decimal
    total_pot: Decimal
    winners_count: int = 0
    share_per_winner: Decimal = ZERO
    new_rollover: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        """Wire form consumed by notification collaborators"""
        return {
            "tierName": self.tier_name,
            "activeUsers": self.active_users,
            "dailyAllocation": str(self.daily_allocation),
            "rollover": str(self.rollover),
            "totalPot": str(self.total_pot),
            "winnersCount": self.winners_count,
            "sharePerWinner": str(self.share_per_winner),
            "newRollover": str(self.new_rollover),
        }


def _active_subscribers(session: Session, tier_name: str, now: datetime) -> List[User]:
    return (
        session.query(User)
        .filter(User.tier == tier_name, User.subscription_expiry > now)
        .order_by(User.id)
        .all()
    )


def _run_exists(session: Session, run_type: SettlementRunType, cycle_key: str) -> bool:
    return (
        session.query(SettlementRun.id)
        .filter(SettlementRun.run_type == run_type.value, SettlementRun.cycle_key == cycle_key)
        .first()
        is not None
    )


def _record_pool_payout(session: Session, tier_name: str, game: str, before: Decimal, paid: Decimal,
                        ref_id: str, note: str):
    LedgerService.append(
        session,
        user_id=pool_account(tier_name, game),
        entry_type=(
            LedgerEntryType.DAILY_TAP_PAYOUT if game == PoolGame.TAP_POT.value else LedgerEntryType.PREDICT_REWARD
        ),
        direction=LedgerDirection.DEBIT,
        amount=paid,
        currency=LedgerCurrency.USDT,
        balance_before=before,
        balance_after=before - paid,
        game=game,
        ref_id=ref_id,
        tier_at_time=tier_name,
        note=note,
    )


class SettlementEngine:
    """Runs tap-pot distribution and prediction resolution for every paid tier"""

    def __init__(
        self,
        config: SettlementConfig,
        oracle: PriceOracle,
        catalog: Optional[TierCatalog] = None,
        sink: Optional[NotificationSink] = None,
    ):
        self.config = config
        self.oracle = oracle
        self.catalog = catalog or TierCatalog(config)
        self.sink = sink or LoggingNotificationSink()

    # ------------------------------------------------------------------
    # Tap pot
    # ------------------------------------------------------------------

    def distribute_tap_pots(self, session: Session, settle_period: str,
                            now: Optional[datetime] = None) -> Optional[List[SettlementSummary]]:
        """
        Share each tier's tap pot for settle_period (YYYY-MM-DD).

        Returns None if the period was already settled. Caller commits.
        """
        now = now or get_naive_utc_now()
        if _run_exists(session, SettlementRunType.TAP_DISTRIBUTION, settle_period):
            logger.info(f"⚠️ TAP_SETTLEMENT: {settle_period} already settled, skipping")
            return None

        wallet = WalletService(session)
        summaries: List[SettlementSummary] = []

        for tier_name in self.catalog.paid_tier_names(session):
            subscribers = _active_subscribers(session, tier_name, now)
            subscriber_ids = [user.id for user in subscribers]

            pot = lock_tier_pot(session, tier_name, PoolGame.TAP_POT.value)
            released = Decimal(pot.pending_amount)
            carried = Decimal(pot.rollover)
            total = released + carried
            summary = SettlementSummary(tier_name, len(subscribers), released, carried, total)

            taps = []
            if subscriber_ids:
                taps = (
                    session.query(DailyTap)
                    .filter(
                        DailyTap.period_key == settle_period,
                        DailyTap.user_id.in_(subscriber_ids),
                        DailyTap.settled.is_(False),
                    )
                    .order_by(DailyTap.user_id)
                    .all()
                )
            total_coins = sum(tap.coins_earned for tap in taps)

            if total <= 0 or total_coins == 0:
                pot.pending_amount = ZERO
                pot.rollover = total
                summary.new_rollover = total
                for tap in taps:
                    tap.settled = True
                logger.info(
                    f"⚠️ TAP_SETTLEMENT: {tier_name} no coins earned for {settle_period}, "
                    f"${total} carried forward"
                )
                summaries.append(summary)
                continue

            users = {user.id: user for user in subscribers}
            weighted = []
            for tap in taps:
                user = users[tap.user_id]
                refresh_user_league(user)
                weight = Decimal(tap.coins_earned) * get_league_multiplier(user.league)
                weighted.append((tap, user, weight))
            weighted_total = sum(weight for _, _, weight in weighted)

            distributed = ZERO
            paid_users = 0
            for tap, user, weight in weighted:
                tap.settled = True
                payout = MonetaryDecimal.floor_money(total * weight / weighted_total) if weighted_total else ZERO
                if payout <= 0:
                    continue
                share_pct = (weight / weighted_total * 100).quantize(Decimal("0.1"))
                wallet.credit_usdt(
                    user,
                    payout,
                    LedgerEntryType.DAILY_TAP_PAYOUT,
                    ref_id=f"tap_{settle_period}",
                    game=PoolGame.TAP_POT.value,
                    note=(
                        f"Daily tap payout: ${payout} ({tap.coins_earned} coins x"
                        f"{get_league_multiplier(user.league)} {user.league} league = {share_pct}% of "
                        f"${total} {tier_name} pot) for {settle_period}"
                    ),
                )
                distributed += payout
                paid_users += 1

            residual = total - distributed
            if distributed > 0:
                _record_pool_payout(
                    session, tier_name, PoolGame.TAP_POT.value, total, distributed,
                    ref_id=f"tap_{settle_period}",
                    note=f"{tier_name} tap pot ${distributed} paid to {paid_users} users for {settle_period}",
                )
            pot.pending_amount = ZERO
            pot.rollover = residual

            summary.winners_count = paid_users
            summary.new_rollover = residual
            summaries.append(summary)
            logger.info(
                f"✅ TAP_SETTLEMENT: {tier_name} ${distributed} distributed to {paid_users} users "
                f"for {settle_period}, ${residual} residue carried"
            )

        session.add(SettlementRun(
            run_type=SettlementRunType.TAP_DISTRIBUTION.value,
            cycle_key=settle_period,
            summary=[s.to_dict() for s in summaries],
            completed_at=now,
        ))
        session.flush()
        return summaries

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------

    @staticmethod
    def is_correct(direction: str, price_at_prediction: Decimal, settle_price: Decimal) -> bool:
        """A flat price is wrong for both directions"""
        if direction == PredictionDirection.HIGHER.value:
            return settle_price > price_at_prediction
        if direction == PredictionDirection.LOWER.value:
            return settle_price < price_at_prediction
        return False

    def _resolve_matured(self, session: Session, settle_price: Decimal, now: datetime) -> List[Prediction]:
        cutoff = now - timedelta(hours=self.config.prediction_maturity_hours)
        matured = (
            session.query(Prediction)
            .filter(Prediction.resolved.is_(False), Prediction.created_at <= cutoff)
            .order_by(Prediction.created_at)
            .with_for_update()
            .all()
        )

        for prediction in matured:
            correct = self.is_correct(prediction.direction, Decimal(prediction.price_at_prediction), settle_price)
            prediction.resolved = True
            prediction.resolved_price = settle_price
            prediction.correct = correct
            prediction.resolved_at = now

            user = session.get(User, prediction.user_id)
            if user is None:
                continue
            movement = f"BTC {prediction.direction} from ${prediction.price_at_prediction} -> ${settle_price}"
            before = user.correct_predictions or 0
            if correct:
                user.correct_predictions = before + 1
            LedgerService.append(
                session,
                user_id=user.id,
                entry_type=LedgerEntryType.PREDICT_WIN if correct else LedgerEntryType.PREDICT_LOSS,
                direction=LedgerDirection.CREDIT if correct else LedgerDirection.DEBIT,
                amount=1 if correct else 0,
                currency=LedgerCurrency.COINS,
                balance_before=before,
                balance_after=user.correct_predictions,
                game=PoolGame.PREDICT_POT.value,
                ref_id=prediction.id,
                note=f"{'Correct' if correct else 'Wrong'} prediction: {movement}",
            )

        logger.info(f"🔮 PREDICTION_SETTLEMENT: resolved {len(matured)} predictions at ${settle_price}")
        return matured

    def resolve_predictions(self, session: Session, settle_price: Decimal, cycle_key: str,
                            now: Optional[datetime] = None) -> Optional[List[SettlementSummary]]:
        """
        Resolve matured predictions and pay each tier's winners.

        Returns None if this cycle was already settled. Caller commits.
        """
        now = now or get_naive_utc_now()
        if _run_exists(session, SettlementRunType.PREDICTION_RESOLUTION, cycle_key):
            logger.info(f"⚠️ PREDICTION_SETTLEMENT: {cycle_key} already settled, skipping")
            return None

        settle_price = MonetaryDecimal.quantize_usd(settle_price)
        resolved = self._resolve_matured(session, settle_price, now)

        wallet = WalletService(session)
        summaries: List[SettlementSummary] = []

        for tier_name in self.catalog.paid_tier_names(session):
            subscribers = _active_subscribers(session, tier_name, now)
            subscriber_ids = {user.id for user in subscribers}

            pot = lock_tier_pot(session, tier_name, PoolGame.PREDICT_POT.value)
            released = Decimal(pot.pending_amount)
            carried = Decimal(pot.rollover)
            total = released + carried
            summary = SettlementSummary(tier_name, len(subscribers), released, carried, total)

            if total <= 0:
                summaries.append(summary)
                continue

            winners = [
                p for p in resolved
                if p.correct and p.tier_name == tier_name and p.user_id in subscriber_ids
            ]
            if not winners:
                pot.pending_amount = ZERO
                pot.rollover = total
                summary.new_rollover = total
                reason = "No subscribers" if not subscribers else "No winners"
                logger.info(f"🔄 PREDICTION_SETTLEMENT: {tier_name} {reason}, ${total} rolled over")
                summaries.append(summary)
                continue

            share = MonetaryDecimal.floor_money(total / len(winners))
            distributed = ZERO
            if share > 0:
                for prediction in winners:
                    user = wallet.get_user(prediction.user_id, for_update=True)
                    wallet.credit_usdt(
                        user,
                        share,
                        LedgerEntryType.PREDICT_REWARD,
                        ref_id=prediction.id,
                        game=PoolGame.PREDICT_POT.value,
                        note=f"Prediction payout: ${share} (1/{len(winners)} share of ${total} {tier_name} pot)",
                    )
                    prediction.rewarded = True
                    distributed += share

            residual = total - distributed
            if distributed > 0:
                _record_pool_payout(
                    session, tier_name, PoolGame.PREDICT_POT.value, total, distributed,
                    ref_id=f"predict_{cycle_key}",
                    note=f"{tier_name} prediction pot ${distributed} paid to {len(winners)} winners",
                )
            pot.pending_amount = ZERO
            pot.rollover = residual

            summary.winners_count = len(winners)
            summary.share_per_winner = share
            summary.new_rollover = residual
            summaries.append(summary)
            logger.info(
                f"✅ PREDICTION_SETTLEMENT: {tier_name} ${distributed} to {len(winners)} winners "
                f"(${share} each), rollover ${residual}"
            )

        session.add(SettlementRun(
            run_type=SettlementRunType.PREDICTION_RESOLUTION.value,
            cycle_key=cycle_key,
            btc_price=settle_price,
            summary=[s.to_dict() for s in summaries],
            completed_at=now,
        ))
        session.flush()
        return summaries

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, session_factory: Callable[[], Session],
                        now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Lock the BTC price, then settle taps and predictions, each step in its
        own transaction. Raises OracleUnavailableError (oracle left frozen)
        without touching any pot when no price could be obtained.
        """
        now = now or get_naive_utc_now()
        logger.info(f"🌙 SETTLEMENT_CYCLE: starting at {now:%Y-%m-%d %H:%M}")

        self.oracle.clear_cache()
        try:
            locked = await self.oracle.fetch_with_retry()
        except OracleUnavailableError as e:
            logger.error(f"❌ SETTLEMENT_CYCLE: aborted, BTC price unavailable: {e}")
            raise

        logger.info(
            f"🔒 SETTLEMENT_CYCLE: locked BTC ${locked.price} via {', '.join(locked.sources)}"
            f"{' [median]' if locked.median else ''}"
        )

        results: Dict[str, Any] = {"btc_price": locked.price, "tap": None, "predictions": None}

        session = session_factory()
        try:
            results["tap"] = self.distribute_tap_pots(session, previous_period_key(now), now)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        session = session_factory()
        try:
            results["predictions"] = self.resolve_predictions(session, locked.price, period_key(now.date()), now)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        for step in ("tap", "predictions"):
            for summary in results[step] or []:
                safe_publish(self.sink, f"settlement.{step}", summary.to_dict())

        logger.info("✅ SETTLEMENT_CYCLE: complete")
        return results

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_tier_pool_status(self, session: Session, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Per paid tier: subscribers, daily units, pot balances and this month's vault"""
        now = now or get_naive_utc_now()
        status = []
        for tier_name in self.catalog.paid_tier_names(session):
            active = (
                session.query(func.count(User.id))
                .filter(User.tier == tier_name, User.subscription_expiry > now)
                .scalar()
            ) or 0
            tap = get_tier_pot(session, tier_name, PoolGame.TAP_POT.value)
            predict = get_tier_pot(session, tier_name, PoolGame.PREDICT_POT.value)
            status.append({
                "tierName": tier_name,
                "activeSubscribers": active,
                "dailyUnits": MonetaryDecimal.quantize_money(active * self.catalog.get_daily_unit(session, tier_name)),
                "tapPotPending": Decimal(tap.pending_amount) if tap else ZERO,
                "tapPotRollover": Decimal(tap.rollover) if tap else ZERO,
                "predictPotPending": Decimal(predict.pending_amount) if predict else ZERO,
                "predictPotRollover": Decimal(predict.rollover) if predict else ZERO,
                "vaultBalance": vault_balance(session, tier_name, month_key(now)),
            })
        return status
