"""
Settlement core exceptions.

Raised by services before any mutation is flushed where possible; anything
raised inside managed_session() rolls back the whole unit of work.
"""


class SettlementError(Exception):
    """Base class for settlement core errors"""


class LedgerError(SettlementError):
    """Ledger append or verification failure"""


class ImmutableRecordError(LedgerError):
    """Attempt to update or delete a finalized ledger entry or batch"""


class UnknownTierError(SettlementError):
    pass


class AmountMismatchError(SettlementError):
    """Verified payment amount does not match the tier price"""


class DuplicateTransactionError(SettlementError):
    """Transaction hash already used with a different payload"""


class InvoiceError(SettlementError):
    pass


class InvalidSignatureError(InvoiceError):
    pass


class OracleUnavailableError(SettlementError):
    """No trustworthy BTC price could be obtained within the retry budget"""


class PredictionsFrozenError(SettlementError):
    """Prediction submission rejected while settlement is delayed"""


class PredictionError(SettlementError):
    pass


class NoSpinAvailableError(SettlementError):
    pass


class WithdrawalValidationError(SettlementError):
    pass


class InsufficientBalanceError(SettlementError):
    pass


class InvalidTransitionError(SettlementError):
    """Withdrawal status change not allowed from its current state"""


class UserNotFoundError(SettlementError):
    pass
