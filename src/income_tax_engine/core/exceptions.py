"""Custom exceptions for the income tax engine."""

from typing import Optional


class TaxEngineError(Exception):
    """Base exception.

    Carries the taxpayer / regime / period that triggered the failure so
    every surfaced error can be traced back to one calculation key.
    """

    retryable = False
    #: set by TaxEngine.calculate: FAILED, and the state the run failed in
    run_status = None
    failed_stage = None

    def __init__(
        self,
        message: str,
        taxpayer_id: Optional[str] = None,
        regime=None,
        period=None,
    ):
        super().__init__(message)
        self.message = message
        self.taxpayer_id = taxpayer_id
        self.regime = regime
        self.period = period

    def with_context(self, taxpayer_id=None, regime=None, period=None) -> "TaxEngineError":
        """Fill in missing context fields and return self (for re-raise)."""
        if self.taxpayer_id is None:
            self.taxpayer_id = taxpayer_id
        if self.regime is None:
            self.regime = regime
        if self.period is None:
            self.period = period
        return self

    def __str__(self) -> str:
        parts = []
        if self.taxpayer_id is not None:
            parts.append(f"taxpayer={self.taxpayer_id}")
        if self.regime is not None:
            parts.append(f"regime={getattr(self.regime, 'value', self.regime)}")
        if self.period is not None:
            parts.append(f"period={self.period}")
        if not parts:
            return self.message
        return f"{self.message} [{', '.join(parts)}]"


class RuleNotFoundError(TaxEngineError):
    pass


class RuleConflictError(TaxEngineError):
    pass


class InvalidInputError(TaxEngineError):
    pass


class InvalidAmountError(InvalidInputError):
    pass


class LossAllocationConflictError(TaxEngineError):
    pass


class PersistenceFailureError(TaxEngineError):
    retryable = True


class CalculationNotFoundError(TaxEngineError):
    pass


class RuleFeedError(TaxEngineError):
    pass
