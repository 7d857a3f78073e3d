"""
Anti-abuse gate

Withdrawal requests are scored by an external heuristic. The core only reads
the score: at or above abuse_flag_threshold a withdrawal enters the pipeline
as 'flagged' instead of 'pending_audit' and waits for manual review.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal

logger = logging.getLogger(__name__)


class AbuseGate(ABC):

    @abstractmethod
    def score_withdrawal(self, user_id: str, amount: Decimal, to_wallet: str) -> int:
        """0 = clean; higher is more suspicious"""
        ...


class PermissiveAbuseGate(AbuseGate):
    """Scores everything as clean"""

    def score_withdrawal(self, user_id: str, amount: Decimal, to_wallet: str) -> int:
        return 0


class FixedScoreAbuseGate(AbuseGate):
    """Returns a constant score; used to force the flagged path"""

    def __init__(self, score: int):
        self.score = score

    def score_withdrawal(self, user_id: str, amount: Decimal, to_wallet: str) -> int:
        return self.score
