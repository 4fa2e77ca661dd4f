"""
Error taxonomy for the lifecycle engine.

Every error carries a short machine-readable `reason` plus a `context` dict
that ends up in the log line and in the trade audit record.

  ValidationError         bad input, rejected before any exchange call
  DataQualityError        exchange/contract data unusable (fail closed)
  MarketDataError         one symbol's market data could not be read
  ExecutionError          order placement failed, local state unchanged
  SlippageRejection       opening fill too far from the reference price
  ReconciliationAmbiguity exchange and ledger disagree, nothing deleted
  FatalError              stop the scheduler (persistence, invariants)
"""


class TradingError(Exception):
    """Base class; `reason` is a short tag, `context` free-form details."""

    def __init__(self, reason: str, **context):
        super().__init__(reason)
        self.reason = reason
        self.context = context

    def __str__(self) -> str:
        if not self.context:
            return self.reason
        details = ', '.join(f'{k}={v}' for k, v in self.context.items())
        return f'{self.reason} ({details})'


class ValidationError(TradingError):
    pass


class DataQualityError(TradingError):
    pass


class MarketDataError(TradingError):
    pass


class ExecutionError(TradingError):
    pass


class SlippageRejection(ExecutionError):
    pass


class ReconciliationAmbiguity(TradingError):
    pass


class FatalError(TradingError):
    pass


class PersistenceError(FatalError):
    pass
