"""BTC direction predictions: submission against the oracle's current price"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from models import Prediction, PredictionDirection, User
from services.errors import PredictionsFrozenError, PredictionError, UserNotFoundError
from services.price_oracle import PriceOracle
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

SETTLEMENT_DELAYED_MESSAGE = "BTC Price Settlement Delayed - predictions are paused until the price is verified"


class PredictionService:
    """Accepts one open prediction per user while the oracle is healthy"""

    def __init__(self, oracle: PriceOracle):
        self.oracle = oracle

    @staticmethod
    def _parse_direction(direction: str) -> str:
        value = (direction or "").strip().lower()
        if value not in (PredictionDirection.HIGHER.value, PredictionDirection.LOWER.value):
            raise PredictionError(f"Invalid prediction direction: {direction!r}")
        return value

    async def submit_prediction(self, session: Session, user_id: str, direction: str,
                                now: Optional[datetime] = None) -> Prediction:
        """
        Record a prediction at the current validated BTC price.

        Raises PredictionsFrozenError while the oracle is frozen, and
        PredictionError if the user already has an unresolved prediction.
        """
        if self.oracle.is_frozen():
            logger.warning(f"⚠️ PREDICTION: rejected for {user_id}, oracle frozen")
            raise PredictionsFrozenError(SETTLEMENT_DELAYED_MESSAGE)

        direction = self._parse_direction(direction)
        now = now or get_naive_utc_now()

        user = session.query(User).filter(User.id == user_id).with_for_update().one_or_none()
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")

        open_prediction = (
            session.query(Prediction.id)
            .filter(Prediction.user_id == user_id, Prediction.resolved.is_(False))
            .first()
        )
        if open_prediction is not None:
            raise PredictionError("You already have an active prediction")

        result = self.oracle.cached_result() or await self.oracle.fetch()

        prediction = Prediction(
            user_id=user_id,
            tier_name=user.tier,
            direction=direction,
            price_at_prediction=result.price,
            created_at=now,
        )
        session.add(prediction)
        session.flush()

        logger.info(f"✅ PREDICTION: {user_id} ({user.tier}) predicts {direction} from ${result.price}")
        return prediction
