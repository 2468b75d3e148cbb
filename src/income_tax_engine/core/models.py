"""Data models for the income tax engine."""

import calendar
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from .exceptions import InvalidInputError
from .money import to_decimal


class Regime(str, Enum):
    CORPORATE_STANDARD = "corporate-standard"
    CORPORATE_SMALL = "corporate-small"
    CORPORATE_ESTONIAN = "corporate-estonian"
    PERSONAL_PROGRESSIVE = "personal-progressive"
    PERSONAL_FLAT = "personal-flat"
    PERSONAL_LUMP_SUM = "personal-lump-sum"

    @property
    def is_corporate(self) -> bool:
        return self.value.startswith("corporate")


class RuleKind(str, Enum):
    RATE = "rate"
    AMOUNT = "amount"
    SCALE = "scale"
    EXPENSE_POLICY = "expense_policy"
    SCHEDULE = "schedule"


class PeriodType(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"


class CalculationStatus(str, Enum):
    DRAFT = "draft"
    VALIDATING = "validating"
    CALCULATED = "calculated"
    COMMITTED = "committed"
    FAILED = "failed"
    SUPERSEDED = "superseded"


class AdvanceMethod(str, Enum):
    CUMULATIVE = "cumulative"
    SIMPLIFIED = "simplified"


class TaxMethod(str, Enum):
    """Personal income-based taxation method selectable per calculation."""
    PROGRESSIVE = "progressive"
    FLAT = "flat"


_PERIOD_RE = re.compile(r"^(\d{4})(?:-(Q[1-4]|\d{1,2}))?$", re.IGNORECASE)


@dataclass(frozen=True)
class Period:
    """A tax period: a month, a quarter, or a full year."""

    year: int
    period_type: PeriodType = PeriodType.ANNUAL
    number: int = 0

    def __post_init__(self):
        if self.year < 1900 or self.year > 9999:
            raise InvalidInputError(f"Invalid period year: {self.year}")
        if self.period_type == PeriodType.MONTHLY and not 1 <= self.number <= 12:
            raise InvalidInputError(f"Invalid month: {self.number}")
        if self.period_type == PeriodType.QUARTERLY and not 1 <= self.number <= 4:
            raise InvalidInputError(f"Invalid quarter: {self.number}")
        if self.period_type == PeriodType.ANNUAL and self.number != 0:
            raise InvalidInputError("Annual period takes no number")

    @classmethod
    def annual(cls, year: int) -> "Period":
        return cls(year, PeriodType.ANNUAL, 0)

    @classmethod
    def monthly(cls, year: int, month: int) -> "Period":
        return cls(year, PeriodType.MONTHLY, month)

    @classmethod
    def quarterly(cls, year: int, quarter: int) -> "Period":
        return cls(year, PeriodType.QUARTERLY, quarter)

    @classmethod
    def parse(cls, text: str) -> "Period":
        """Parse '2024', '2024-Q2' or '2024-03'."""
        m = _PERIOD_RE.match(text.strip()) if text else None
        if not m:
            raise InvalidInputError(f"Malformed period: {text!r} (use YYYY, YYYY-Qn or YYYY-MM)")
        year = int(m.group(1))
        part = m.group(2)
        if part is None:
            return cls.annual(year)
        if part.upper().startswith("Q"):
            return cls.quarterly(year, int(part[1:]))
        return cls.monthly(year, int(part))

    @property
    def is_annual(self) -> bool:
        return self.period_type == PeriodType.ANNUAL

    @property
    def end_month(self) -> int:
        if self.period_type == PeriodType.MONTHLY:
            return self.number
        if self.period_type == PeriodType.QUARTERLY:
            return self.number * 3
        return 12

    @property
    def start_date(self) -> date:
        if self.period_type == PeriodType.MONTHLY:
            return date(self.year, self.number, 1)
        if self.period_type == PeriodType.QUARTERLY:
            return date(self.year, self.number * 3 - 2, 1)
        return date(self.year, 1, 1)

    @property
    def end_date(self) -> date:
        month = self.end_month
        return date(self.year, month, calendar.monthrange(self.year, month)[1])

    @property
    def key(self) -> str:
        if self.period_type == PeriodType.MONTHLY:
            return f"{self.year}-{self.number:02d}"
        if self.period_type == PeriodType.QUARTERLY:
            return f"{self.year}-Q{self.number}"
        return str(self.year)

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class Bracket:
    """One income sub-range taxed at a single marginal rate."""

    label: str
    lower: Decimal
    upper: Optional[Decimal]
    rate: Decimal
    base_amount: Decimal = Decimal("0")  #: cumulative tax of all lower brackets


@dataclass(frozen=True)
class BracketSet:
    """Ordered brackets plus the tax-free allowance and its degression band."""

    brackets: tuple
    allowance: Decimal = Decimal("0")
    degression_start: Optional[Decimal] = None
    degression_end: Optional[Decimal] = None

    def __post_init__(self):
        if not self.brackets:
            raise InvalidInputError("Bracket set needs at least one bracket")
        for prev, nxt in zip(self.brackets, self.brackets[1:]):
            if prev.upper is None:
                raise InvalidInputError(f"Only the last bracket may be unbounded ({prev.label})")
            if prev.upper != nxt.lower:
                raise InvalidInputError(
                    f"Brackets must be contiguous: {prev.label} ends at {prev.upper}, "
                    f"{nxt.label} starts at {nxt.lower}"
                )
        for b in self.brackets:
            if b.upper is not None and b.upper <= b.lower:
                raise InvalidInputError(f"Bracket {b.label} has upper <= lower")
        if (self.degression_start is None) != (self.degression_end is None):
            raise InvalidInputError("Degression start and end must be given together")
        if self.degression_start is not None and self.degression_end <= self.degression_start:
            raise InvalidInputError("Degression end must be above degression start")

    def to_dict(self) -> dict:
        def opt(v):
            return str(v) if v is not None else None
        return {
            "brackets": [
                {
                    "label": b.label,
                    "lower": str(b.lower),
                    "upper": opt(b.upper),
                    "rate": str(b.rate),
                    "base_amount": str(b.base_amount),
                }
                for b in self.brackets
            ],
            "allowance": str(self.allowance),
            "degression_start": opt(self.degression_start),
            "degression_end": opt(self.degression_end),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BracketSet":
        def opt(v):
            return Decimal(v) if v is not None else None
        return cls(
            brackets=tuple(
                Bracket(
                    label=b["label"],
                    lower=Decimal(b["lower"]),
                    upper=opt(b.get("upper")),
                    rate=Decimal(b["rate"]),
                    base_amount=Decimal(b.get("base_amount", "0")),
                )
                for b in data["brackets"]
            ),
            allowance=Decimal(data.get("allowance", "0")),
            degression_start=opt(data.get("degression_start")),
            degression_end=opt(data.get("degression_end")),
        )


@dataclass(frozen=True)
class CategoryPolicy:
    deductible_share: Decimal
    legal_basis: str = ""


@dataclass(frozen=True)
class ExpensePolicy:
    """Expense category → deductibility. Unlisted categories are fully deductible."""

    categories: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            name: {"deductible_share": str(p.deductible_share), "legal_basis": p.legal_basis}
            for name, p in self.categories.items()
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExpensePolicy":
        return cls(categories={
            name: CategoryPolicy(Decimal(p["deductible_share"]), p.get("legal_basis", ""))
            for name, p in data.items()
        })


@dataclass(frozen=True)
class RuleEntry:
    """One time-bounded version of a rate, amount, scale or policy.

    ``value`` type depends on ``kind``: Decimal (rate, amount), BracketSet
    (scale), ExpensePolicy (expense_policy), tuple of Decimal (schedule).
    """

    regime: Regime
    rate_code: str
    kind: RuleKind
    value: Any
    effective_from: date
    effective_to: Optional[date] = None
    legal_reference: str = ""
    description: str = ""
    id: Optional[int] = None

    def covers(self, as_of: date) -> bool:
        if as_of < self.effective_from:
            return False
        return self.effective_to is None or as_of <= self.effective_to

    def overlaps(self, other: "RuleEntry") -> bool:
        self_end = self.effective_to or date.max
        other_end = other.effective_to or date.max
        return self.effective_from <= other_end and other.effective_from <= self_end

    @staticmethod
    def encode_value(kind: RuleKind, value: Any):
        """Rule value → JSON-compatible form (Decimals as strings)."""
        if kind in (RuleKind.RATE, RuleKind.AMOUNT):
            return str(value)
        if kind in (RuleKind.SCALE, RuleKind.EXPENSE_POLICY):
            return value.to_dict()
        return [str(v) for v in value]

    @staticmethod
    def decode_value(kind: RuleKind, raw: Any) -> Any:
        try:
            if kind in (RuleKind.RATE, RuleKind.AMOUNT):
                return to_decimal(raw, "Rule value")
            if kind == RuleKind.SCALE:
                return BracketSet.from_dict(raw)
            if kind == RuleKind.EXPENSE_POLICY:
                return ExpensePolicy.from_dict(raw)
            return tuple(Decimal(str(v)) for v in raw)
        except (ArithmeticError, KeyError, TypeError, AttributeError) as e:
            raise InvalidInputError(f"Malformed {kind.value} rule value: {e}")

    def to_dict(self) -> dict:
        return {
            "regime": self.regime.value,
            "rate_code": self.rate_code,
            "kind": self.kind.value,
            "value": self.encode_value(self.kind, self.value),
            "effective_from": self.effective_from.isoformat(),
            "effective_to": self.effective_to.isoformat() if self.effective_to else None,
            "legal_reference": self.legal_reference,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RuleEntry":
        if not isinstance(data, dict):
            raise InvalidInputError(
                f"Malformed rule entry: expected an object, got {type(data).__name__}"
            )
        try:
            kind = RuleKind(data["kind"])
            effective_to = data.get("effective_to")
            return cls(
                regime=Regime(data["regime"]),
                rate_code=data["rate_code"],
                kind=kind,
                value=cls.decode_value(kind, data["value"]),
                effective_from=date.fromisoformat(data["effective_from"]),
                effective_to=date.fromisoformat(effective_to) if effective_to else None,
                legal_reference=data.get("legal_reference", ""),
                description=data.get("description", ""),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise InvalidInputError(f"Malformed rule entry: {e}")


@dataclass
class ExpenseLine:
    category: str
    amount: Decimal
    description: str = ""
    deductible_amount: Optional[Decimal] = None  #: None until classified
    non_deductible_amount: Decimal = Decimal("0")
    legal_basis: str = ""
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "amount": str(self.amount),
            "description": self.description,
            "deductible_amount": str(self.deductible_amount) if self.deductible_amount is not None else None,
            "non_deductible_amount": str(self.non_deductible_amount),
            "legal_basis": self.legal_basis,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExpenseLine":
        ded = data.get("deductible_amount")
        return cls(
            category=data["category"],
            amount=Decimal(data["amount"]),
            description=data.get("description", ""),
            deductible_amount=Decimal(ded) if ded is not None else None,
            non_deductible_amount=Decimal(data.get("non_deductible_amount", "0")),
            legal_basis=data.get("legal_basis", ""),
            reason=data.get("reason", ""),
        )


@dataclass
class BracketLine:
    """Per-bracket audit line."""
    label: str
    rate: Decimal
    income: Decimal
    tax: Decimal

    def to_dict(self) -> dict:
        return {"label": self.label, "rate": str(self.rate), "income": str(self.income), "tax": str(self.tax)}

    @classmethod
    def from_dict(cls, data: dict) -> "BracketLine":
        return cls(data["label"], Decimal(data["rate"]), Decimal(data["income"]), Decimal(data["tax"]))


@dataclass
class LossRecord:
    taxpayer_id: str
    regime: Regime
    origin_year: int
    original_amount: Decimal
    remaining_amount: Decimal
    expiration_year: int
    source_calculation_id: Optional[int] = None
    voided: bool = False
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def is_active(self, year: int) -> bool:
        return (
            not self.voided
            and self.remaining_amount > 0
            and self.origin_year < year <= self.expiration_year
        )


@dataclass
class LossApplication:
    """Immutable audit row: how much of one loss record one calculation used."""
    loss_record_id: int
    calculation_id: int
    amount_applied: Decimal
    remaining_after: Decimal
    amount_released: Decimal = Decimal("0")
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class CalculationOptions:
    apply_loss_carry_forward: bool = False
    small_taxpayer: bool = False
    joint_filing: bool = False
    partner_income: Decimal = Decimal("0")
    method: Optional[TaxMethod] = None
    lump_sum_code: str = "OTHER_SERVICES"
    distributed_profit: Decimal = Decimal("0")
    child_count: int = 0
    health_insurance: Decimal = Decimal("0")
    zus_contributions: Decimal = Decimal("0")   #: social insurance paid, deducted from PIT income
    exempt_revenue: Decimal = Decimal("0")      #: tax-exempt part of CIT revenue
    prior_advances_paid: Optional[Decimal] = None


@dataclass
class CalculationRequest:
    taxpayer_id: str
    regime: Regime
    period: Period
    revenue: Decimal
    expenses: list = field(default_factory=list)
    options: CalculationOptions = field(default_factory=CalculationOptions)


@dataclass
class CalculationRecord:
    taxpayer_id: str
    regime: Regime
    period: Period
    revenue: Decimal = Decimal("0")
    exempt_revenue: Decimal = Decimal("0")
    expenses: Decimal = Decimal("0")
    non_deductible_total: Decimal = Decimal("0")
    gross_income: Decimal = Decimal("0")
    zus_deduction: Decimal = Decimal("0")
    loss_deduction: Decimal = Decimal("0")
    taxable_income: Decimal = Decimal("0")
    rate_code: str = ""
    rate_label: str = ""
    allowance: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    child_relief: Decimal = Decimal("0")
    health_deduction: Decimal = Decimal("0")
    solidarity_surcharge: Decimal = Decimal("0")
    total_tax: Decimal = Decimal("0")
    effective_rate: Decimal = Decimal("0")
    brackets: list = field(default_factory=list)
    expense_lines: list = field(default_factory=list)
    loss_applications: list = field(default_factory=list)
    prior_advances_paid: Decimal = Decimal("0")
    installment_due: Decimal = Decimal("0")
    due_date: Optional[date] = None
    notes: list = field(default_factory=list)
    status: CalculationStatus = CalculationStatus.DRAFT
    supersedes_id: Optional[int] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class AdvancePayment:
    taxpayer_id: str
    regime: Regime
    period: Period
    method: AdvanceMethod
    due_amount: Decimal
    due_date: date
    cumulative_tax: Decimal = Decimal("0")
    prior_advances_paid: Decimal = Decimal("0")
    paid_amount: Optional[Decimal] = None
    paid_date: Optional[date] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.paid_amount is not None


@dataclass
class AuditEvent:
    event_type: str
    taxpayer_id: str
    regime: str
    period_key: str
    calculation_id: Optional[int] = None
    loss_record_id: Optional[int] = None
    before_state: str = "{}"
    after_state: str = "{}"
    id: Optional[int] = None
    created_at: Optional[datetime] = None
