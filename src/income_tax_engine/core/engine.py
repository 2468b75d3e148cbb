"""Calculation orchestrator — one run per (taxpayer, regime, period).

    DRAFT → VALIDATING → CALCULATED → COMMITTED
                 ↘            ↘
                  FAILED       FAILED

VALIDATING normalises inputs and resolves the regime variant once.
CALCULATED holds the full breakdown with no side effects (preview).
COMMITTED writes, in one transaction: supersede the previous record and
release its loss applications, insert the new record, apply losses, record
a new loss for a negative annual result, upsert the advance row, audit.
"""

import dataclasses
import json
import sqlite3
import threading
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

import structlog

from ..data.database import get_db
from ..data.repositories.advances_repo import AdvancesRepository
from ..data.repositories.audit_repo import AuditRepository
from ..data.repositories.calculations_repo import CalculationsRepository
from .config import get_config
from .exceptions import (
    CalculationNotFoundError,
    InvalidAmountError,
    InvalidInputError,
    LossAllocationConflictError,
    PersistenceFailureError,
    TaxEngineError,
)
from .ledger import LossLedger
from .models import (
    AdvanceMethod,
    AdvancePayment,
    AuditEvent,
    CalculationRecord,
    CalculationRequest,
    CalculationStatus,
    ExpensePolicy,
    LossRecord,
    Period,
    Regime,
)
from .money import ZERO, round_money, to_decimal
from .rules.catalog import RuleCatalog
from .tax import TaxAssessment, assess_tax
from .tax.advances import AdvanceResult, reconcile_advance
from .tax.expenses import classify_all, totals
from .tax.losses import LossAllocation
from .tax.regimes import ProgressiveScale, ResolvedRegime, resolve_regime

logger = structlog.get_logger()

_PIT_INCOME_REGIMES = (Regime.PERSONAL_PROGRESSIVE, Regime.PERSONAL_FLAT)
_CIT_INCOME_REGIMES = (Regime.CORPORATE_STANDARD, Regime.CORPORATE_SMALL)

_TRANSITIONS = {
    CalculationStatus.DRAFT: (CalculationStatus.VALIDATING, CalculationStatus.FAILED),
    CalculationStatus.VALIDATING: (CalculationStatus.CALCULATED, CalculationStatus.FAILED),
    CalculationStatus.CALCULATED: (CalculationStatus.COMMITTED, CalculationStatus.FAILED),
}


class CalculationRun:
    """State of one calculate() call."""

    def __init__(self, request: CalculationRequest):
        self.request = request
        self.status = CalculationStatus.DRAFT
        self.failed_stage: Optional[CalculationStatus] = None

    def to(self, status: CalculationStatus) -> None:
        if status not in _TRANSITIONS.get(self.status, ()):
            raise InvalidInputError(
                f"Illegal calculation transition {self.status.value} → {status.value}"
            )
        self.status = status

    def fail(self, error: TaxEngineError) -> TaxEngineError:
        """Move to FAILED and stamp the error with where the run stopped."""
        if self.status in _TRANSITIONS:
            self.failed_stage = self.status
            self.status = CalculationStatus.FAILED
        error.run_status = self.status
        error.failed_stage = self.failed_stage
        return error


@dataclass
class CalculationResult:
    record: CalculationRecord
    allocation: Optional[LossAllocation] = None
    advance: Optional[AdvanceResult] = None
    new_loss: Optional[Decimal] = None          #: loss to carry forward from this period
    recorded_loss: Optional[LossRecord] = None  #: set once committed
    committed: bool = False


@dataclass
class _Draft:
    """Everything computed in CALCULATED, before any write."""
    result: CalculationResult
    superseded: Optional[CalculationRecord]


class TaxEngine:
    """Entry point for calculations, loss entries and advance reconciliation."""

    def __init__(
        self,
        catalog: RuleCatalog,
        due_day: Optional[int] = None,
        ledger: Optional[LossLedger] = None,
        calculations: Optional[CalculationsRepository] = None,
        advances: Optional[AdvancesRepository] = None,
        audit: Optional[AuditRepository] = None,
    ):
        self.catalog = catalog
        self.due_day = due_day if due_day is not None else get_config().advance_due_day
        self.ledger = ledger or LossLedger(catalog)
        self._calculations = calculations or CalculationsRepository()
        self._advances = advances or AdvancesRepository()
        self._audit = audit or AuditRepository()
        self._locks: dict[tuple, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, taxpayer_id: str, regime: Regime, period: Period) -> threading.Lock:
        key = (taxpayer_id, regime, period.key)
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    # ------------------------------------------------------------------
    # calculate
    # ------------------------------------------------------------------

    def calculate(self, request: CalculationRequest, commit: bool = True) -> CalculationResult:
        """Compute the obligation for one period; persist it when ``commit``.

        Raises:
            InvalidInputError: negative amounts, bad option combinations.
            RuleNotFoundError: a required rule is not in force for the period.
            LossAllocationConflictError: losses changed twice under the run.
            PersistenceFailureError: the commit failed and was rolled back.
        """
        run = CalculationRun(request)
        ctx = dict(taxpayer_id=request.taxpayer_id, regime=request.regime, period=request.period)

        with self._lock_for(request.taxpayer_id, request.regime, request.period):
            try:
                run.to(CalculationStatus.VALIDATING)
                request = self._validate(request)
                resolved = resolve_regime(
                    self.catalog, request.regime, request.period.end_date, request.options
                )
                self._validate_for_regime(request, resolved)

                run.to(CalculationStatus.CALCULATED)
                draft = self._compute(request, resolved)
                if not commit:
                    return draft.result

                try:
                    result = self._commit(request, draft)
                except LossAllocationConflictError:
                    logger.warning(
                        "loss_conflict_retry",
                        taxpayer_id=request.taxpayer_id,
                        regime=request.regime.value,
                        period=request.period.key,
                    )
                    result = self._commit(request, self._compute(request, resolved))

                run.to(CalculationStatus.COMMITTED)
            except TaxEngineError as e:
                raise run.fail(e.with_context(**ctx))
            except sqlite3.Error as e:
                raise run.fail(
                    PersistenceFailureError(f"Calculation commit failed: {e}", **ctx)
                ) from e

        record = result.record
        logger.info(
            "calculation_committed",
            calculation_id=record.id,
            taxpayer_id=record.taxpayer_id,
            regime=record.regime.value,
            period=record.period.key,
            total_tax=str(record.total_tax),
            loss_deduction=str(record.loss_deduction),
            installment_due=str(record.installment_due),
            supersedes_id=record.supersedes_id,
        )
        return result

    def _validate(self, request: CalculationRequest) -> CalculationRequest:
        """Normalise amounts to Decimal and reject negatives and floats."""
        if not request.taxpayer_id or not request.taxpayer_id.strip():
            raise InvalidInputError("Taxpayer id is required")
        if not isinstance(request.regime, Regime):
            raise InvalidInputError(f"Unknown regime: {request.regime!r}")
        if not isinstance(request.period, Period):
            raise InvalidInputError(f"Malformed period: {request.period!r}")

        def non_negative(value, name: str) -> Decimal:
            amount = to_decimal(value, name)
            if amount < 0:
                raise InvalidAmountError(f"{name} must not be negative, got {amount}")
            return amount

        expenses = [
            dataclasses.replace(e, amount=non_negative(e.amount, f"Expense '{e.category}'"))
            for e in request.expenses
        ]
        opts = request.options
        if opts.child_count < 0:
            raise InvalidInputError(f"Child count must not be negative, got {opts.child_count}")
        options = dataclasses.replace(
            opts,
            partner_income=non_negative(opts.partner_income, "Partner income"),
            distributed_profit=non_negative(opts.distributed_profit, "Distributed profit"),
            health_insurance=non_negative(opts.health_insurance, "Health insurance"),
            zus_contributions=non_negative(opts.zus_contributions, "ZUS contributions"),
            exempt_revenue=non_negative(opts.exempt_revenue, "Exempt revenue"),
            prior_advances_paid=(
                non_negative(opts.prior_advances_paid, "Prior advances paid")
                if opts.prior_advances_paid is not None else None
            ),
        )
        if options.partner_income > 0 and not options.joint_filing:
            raise InvalidInputError("Partner income is only used with joint filing")
        revenue = non_negative(request.revenue, "Revenue")
        if options.exempt_revenue > revenue:
            raise InvalidAmountError(
                f"Exempt revenue {options.exempt_revenue} exceeds revenue {revenue}"
            )

        return dataclasses.replace(
            request,
            taxpayer_id=request.taxpayer_id.strip(),
            revenue=revenue,
            expenses=expenses,
            options=options,
        )

    @staticmethod
    def _validate_for_regime(request: CalculationRequest, resolved: ResolvedRegime) -> None:
        opts = request.options
        if opts.joint_filing and not isinstance(resolved.method, ProgressiveScale):
            raise InvalidInputError("Joint filing is only available on the progressive scale")
        if opts.child_count and not isinstance(resolved.method, ProgressiveScale):
            raise InvalidInputError("Child relief is only available on the progressive scale")
        if opts.distributed_profit > 0 and resolved.regime != Regime.CORPORATE_ESTONIAN:
            raise InvalidInputError("Distributed profit applies to the Estonian CIT regime only")
        if opts.health_insurance > 0 and resolved.regime != Regime.PERSONAL_FLAT:
            raise InvalidInputError("Health contribution deduction applies to flat-rate PIT only")
        if opts.zus_contributions > 0 and resolved.regime not in _PIT_INCOME_REGIMES:
            raise InvalidInputError(
                "ZUS contributions are deducted on the progressive scale or flat-rate PIT only"
            )
        if opts.exempt_revenue > 0 and resolved.regime not in _CIT_INCOME_REGIMES:
            raise InvalidInputError("Exempt revenue applies to standard and small-taxpayer CIT only")

    def _prior_advances(self, request: CalculationRequest) -> Decimal:
        """Advances due for earlier periods of the same year and type."""
        period = request.period
        return sum(
            (
                a.due_amount
                for a in self._advances.list_for_year(request.taxpayer_id, request.regime, period.year)
                if period.is_annual
                or (a.period.period_type == period.period_type and a.period.number < period.number)
            ),
            ZERO,
        )

    def _compute(self, request: CalculationRequest, resolved: ResolvedRegime) -> _Draft:
        opts = request.options
        period = request.period
        income_rules = resolved.income_rules
        notes: list[str] = []

        policy = income_rules.expense_policy if income_rules else ExpensePolicy()
        lines = classify_all(request.expenses, policy)
        total_expenses, deductible, non_deductible = totals(lines)
        gross = request.revenue - opts.exempt_revenue - deductible
        # ZUS reduces positive income only; it never creates or deepens a loss
        zus_deduction = min(opts.zus_contributions, max(gross, ZERO))
        if zus_deduction < opts.zus_contributions:
            notes.append(
                f"ZUS contributions of {opts.zus_contributions} exceed income; "
                f"{zus_deduction} deducted"
            )
        income = gross - zus_deduction

        superseded = self._calculations.get_committed(request.taxpayer_id, request.regime, period)
        released = self.ledger.held_by(superseded.id) if superseded else {}

        allocation = None
        if income_rules is None:
            if opts.apply_loss_carry_forward:
                notes.append(f"Loss carry-forward does not apply to {resolved.regime.value}")
        else:
            use_losses = opts.apply_loss_carry_forward and income > 0
            if use_losses or released:
                allocation = self.ledger.plan(
                    request.taxpayer_id,
                    request.regime,
                    period.year,
                    income if use_losses else ZERO,
                    cap_rate=income_rules.loss_cap,
                    released=released,
                )
                if use_losses:
                    notes.extend(allocation.notes)
            elif opts.apply_loss_carry_forward:
                notes.append("No positive income — loss carry-forward not applied")

        loss_deduction = allocation.total_applied if allocation else ZERO
        taxable = income - loss_deduction

        assessment: TaxAssessment = assess_tax(resolved.method, taxable, request.revenue, opts)
        notes.extend(assessment.notes)
        if income_rules is None:
            taxable = assessment.taxable_base

        base = gross if income_rules else assessment.taxable_base
        effective_rate = (
            round_money(assessment.total_tax / base * 100) if base > 0 else ZERO
        )

        prior_advances = (
            opts.prior_advances_paid if opts.prior_advances_paid is not None
            else self._prior_advances(request)
        )

        advance = None
        if period.is_annual:
            installment_due = max(round_money(assessment.total_tax - prior_advances), ZERO)
            due_date: Optional[date] = None
            if prior_advances > assessment.total_tax:
                notes.append(
                    f"Advances exceed the annual tax by {prior_advances - assessment.total_tax}"
                )
        else:
            advance = reconcile_advance(
                period,
                AdvanceMethod.CUMULATIVE,
                cumulative_tax=assessment.total_tax,
                prior_advances_paid=prior_advances,
                due_day=self.due_day,
            )
            installment_due = advance.due_amount
            due_date = advance.due_date

        new_loss = None
        if period.is_annual and income_rules is not None and gross < 0:
            new_loss = -gross
            notes.append(f"Loss of {new_loss} carried forward from {period.year}")

        if superseded:
            notes.append(f"Supersedes calculation #{superseded.id}")

        record = CalculationRecord(
            taxpayer_id=request.taxpayer_id,
            regime=request.regime,
            period=period,
            revenue=request.revenue,
            exempt_revenue=opts.exempt_revenue,
            expenses=total_expenses,
            non_deductible_total=non_deductible,
            gross_income=gross,
            zus_deduction=zus_deduction,
            loss_deduction=loss_deduction,
            taxable_income=taxable,
            rate_code=assessment.rate_code,
            rate_label=assessment.rate_label,
            allowance=assessment.allowance,
            tax_amount=assessment.tax,
            child_relief=assessment.child_relief,
            health_deduction=assessment.health_deduction,
            solidarity_surcharge=assessment.solidarity_surcharge,
            total_tax=assessment.total_tax,
            effective_rate=effective_rate,
            brackets=assessment.lines,
            expense_lines=lines,
            prior_advances_paid=prior_advances,
            installment_due=installment_due,
            due_date=due_date,
            notes=notes,
            status=CalculationStatus.CALCULATED,
            supersedes_id=superseded.id if superseded else None,
        )
        result = CalculationResult(
            record=record, allocation=allocation, advance=advance, new_loss=new_loss
        )
        return _Draft(result=result, superseded=superseded)

    def _commit(self, request: CalculationRequest, draft: _Draft) -> CalculationResult:
        result = draft.result
        record = dataclasses.replace(result.record, status=CalculationStatus.COMMITTED)
        db = get_db()
        with db.transaction():
            old = draft.superseded
            if old is not None:
                if not self._calculations.mark_superseded(old.id):
                    raise LossAllocationConflictError(
                        f"Calculation #{old.id} was superseded by another run"
                    )
                self.ledger.void_losses_from(old.id)

            saved = self._calculations.create(record)

            if result.allocation is not None:
                self.ledger.apply(result.allocation, saved.id, period_key=saved.period.key)

            recorded = None
            if result.new_loss is not None:
                recorded = self.ledger.record_loss(
                    saved.taxpayer_id, saved.regime, saved.period.year, result.new_loss,
                    source_calculation_id=saved.id,
                )

            if result.advance is not None:
                self._advances.upsert(self._advance_row(
                    saved.taxpayer_id, saved.regime, saved.period, result.advance
                ))

            self._audit.record(AuditEvent(
                event_type="calculation_committed",
                taxpayer_id=saved.taxpayer_id,
                regime=saved.regime.value,
                period_key=saved.period.key,
                calculation_id=saved.id,
                before_state=json.dumps(
                    {"calculation_id": old.id, "total_tax": str(old.total_tax)} if old else {}
                ),
                after_state=json.dumps({
                    "total_tax": str(saved.total_tax),
                    "taxable_income": str(saved.taxable_income),
                    "loss_deduction": str(saved.loss_deduction),
                    "installment_due": str(saved.installment_due),
                }),
            ))

        # Re-read so loss_applications reflect what was written
        saved = self._calculations.get_by_id(saved.id)
        return dataclasses.replace(result, record=saved, recorded_loss=recorded, committed=True)

    @staticmethod
    def _advance_row(
        taxpayer_id: str, regime: Regime, period: Period, advance: AdvanceResult
    ) -> AdvancePayment:
        return AdvancePayment(
            taxpayer_id=taxpayer_id,
            regime=regime,
            period=period,
            method=advance.method,
            due_amount=advance.due_amount,
            due_date=advance.due_date,
            cumulative_tax=advance.cumulative_tax,
            prior_advances_paid=advance.prior_advances_paid,
        )

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_calculation(self, calculation_id: int) -> CalculationRecord:
        record = self._calculations.get_by_id(calculation_id)
        if record is None:
            raise CalculationNotFoundError(f"Calculation #{calculation_id} not found")
        return record

    def history(self, taxpayer_id: str, regime: Regime, period: Period) -> list[CalculationRecord]:
        return self._calculations.history(taxpayer_id, regime, period)

    def list_calculations(
        self,
        taxpayer_id: str,
        regime: Optional[Regime] = None,
        year: Optional[int] = None,
        include_superseded: bool = False,
    ) -> list[CalculationRecord]:
        return self._calculations.list_for(taxpayer_id, regime, year, include_superseded)

    # ------------------------------------------------------------------
    # Losses
    # ------------------------------------------------------------------

    def record_loss(self, taxpayer_id: str, regime: Regime, year: int, amount) -> int:
        """Manual loss entry (e.g. losses from before onboarding)."""
        ctx = dict(taxpayer_id=taxpayer_id, regime=regime, period=str(year))
        with self._lock_for(taxpayer_id, regime, Period.annual(year)):
            try:
                with get_db().transaction():
                    record = self.ledger.record_loss(taxpayer_id, regime, year, amount)
            except TaxEngineError as e:
                raise e.with_context(**ctx)
            except sqlite3.Error as e:
                raise PersistenceFailureError(f"Could not record loss: {e}", **ctx) from e
        return record.id

    # ------------------------------------------------------------------
    # Advances
    # ------------------------------------------------------------------

    def reconcile_advance(
        self,
        taxpayer_id: str,
        regime: Regime,
        period: Period,
        method: AdvanceMethod = AdvanceMethod.CUMULATIVE,
        cumulative_tax=None,
        prior_advances_paid=None,
        prior_year_tax=None,
        elected_simplified: bool = False,
    ) -> AdvanceResult:
        """Compute and store the installment for ``period``.

        With the cumulative method, ``prior_advances_paid`` defaults to the
        advances already due for earlier periods of the year.
        """
        ctx = dict(taxpayer_id=taxpayer_id, regime=regime, period=period)
        with self._lock_for(taxpayer_id, regime, period):
            try:
                if period.is_annual:
                    raise InvalidInputError("Advances are due for monthly or quarterly periods")
                cumulative = to_decimal(cumulative_tax, "cumulative tax") if cumulative_tax is not None else None
                prior_year = to_decimal(prior_year_tax, "prior-year tax") if prior_year_tax is not None else None
                if prior_advances_paid is None:
                    lookup = CalculationRequest(taxpayer_id, regime, period, ZERO)
                    prior = self._prior_advances(lookup)
                else:
                    prior = to_decimal(prior_advances_paid, "prior advances paid")

                result = reconcile_advance(
                    period,
                    method,
                    cumulative_tax=cumulative,
                    prior_advances_paid=prior,
                    prior_year_tax=prior_year,
                    elected_simplified=elected_simplified,
                    due_day=self.due_day,
                )
                with get_db().transaction():
                    before = self._advances.get(taxpayer_id, regime, period)
                    saved = self._advances.upsert(self._advance_row(taxpayer_id, regime, period, result))
                    self._audit.record(AuditEvent(
                        event_type="advance_reconciled",
                        taxpayer_id=taxpayer_id,
                        regime=regime.value,
                        period_key=period.key,
                        before_state=json.dumps(
                            {"due_amount": str(before.due_amount)} if before else {}
                        ),
                        after_state=json.dumps({
                            "method": result.method.value,
                            "due_amount": str(result.due_amount),
                            "due_date": result.due_date.isoformat(),
                        }),
                    ))
            except TaxEngineError as e:
                raise e.with_context(**ctx)
            except sqlite3.Error as e:
                raise PersistenceFailureError(f"Could not store advance: {e}", **ctx) from e

        logger.info(
            "advance_reconciled",
            taxpayer_id=taxpayer_id,
            regime=regime.value,
            period=period.key,
            method=result.method.value,
            due_amount=str(result.due_amount),
            due_date=result.due_date.isoformat(),
            advance_id=saved.id,
        )
        return result

    def record_advance_payment(self, advance_id: int, amount, paid_date: date) -> AdvancePayment:
        amount = to_decimal(amount, "payment amount")
        if amount < 0:
            raise InvalidAmountError(f"Payment amount must not be negative, got {amount}")
        try:
            saved = self._advances.record_payment(advance_id, round_money(amount), paid_date)
        except sqlite3.Error as e:
            raise PersistenceFailureError(f"Could not record payment: {e}") from e
        if saved is None:
            raise InvalidInputError(f"Advance payment #{advance_id} not found")
        return saved

    def advance_schedule(self, taxpayer_id: str, regime: Regime, year: int) -> list[AdvancePayment]:
        return self._advances.list_for_year(taxpayer_id, regime, year)
