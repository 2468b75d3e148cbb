"""Repository for calculation records (append-only; old ones get superseded)."""

import json
import sqlite3
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from ...core.models import (
    BracketLine,
    CalculationRecord,
    CalculationStatus,
    ExpenseLine,
    Period,
    Regime,
)
from ..query import BaseRepository
from .losses_repo import LossApplicationsRepository

_MONEY_FIELDS = (
    "revenue", "exempt_revenue", "expenses", "non_deductible_total", "gross_income",
    "zus_deduction", "loss_deduction",
    "taxable_income", "allowance", "tax_amount", "child_relief", "health_deduction",
    "solidarity_surcharge", "total_tax", "effective_rate", "prior_advances_paid",
    "installment_due",
)


class CalculationsRepository(BaseRepository[CalculationRecord]):
    _table = "calculations"

    def _map(self, row: sqlite3.Row) -> CalculationRecord:
        money = {name: Decimal(row[name]) for name in _MONEY_FIELDS}
        return CalculationRecord(
            taxpayer_id=row["taxpayer_id"],
            regime=Regime(row["regime"]),
            period=Period.parse(row["period_key"]),
            rate_code=row["rate_code"],
            rate_label=row["rate_label"] or "",
            brackets=[BracketLine.from_dict(b) for b in json.loads(row["brackets"])],
            expense_lines=[ExpenseLine.from_dict(e) for e in json.loads(row["expense_lines"])],
            loss_applications=LossApplicationsRepository().list_by_calculation(row["id"]),
            notes=json.loads(row["notes"]),
            due_date=date.fromisoformat(row["due_date"]) if row["due_date"] else None,
            status=CalculationStatus(row["status"]),
            supersedes_id=row["supersedes_id"],
            id=row["id"],
            created_at=datetime.fromisoformat(row["created_at"]) if row["created_at"] else None,
            **money,
        )

    def _to_row(self, rec: CalculationRecord) -> dict:
        row = {
            "taxpayer_id": rec.taxpayer_id,
            "regime": rec.regime.value,
            "period_key": rec.period.key,
            "period_year": rec.period.year,
            "rate_code": rec.rate_code,
            "rate_label": rec.rate_label,
            "brackets": json.dumps([b.to_dict() for b in rec.brackets], ensure_ascii=False),
            "expense_lines": json.dumps([e.to_dict() for e in rec.expense_lines], ensure_ascii=False),
            "notes": json.dumps(list(rec.notes), ensure_ascii=False),
            "due_date": rec.due_date.isoformat() if rec.due_date else None,
            "status": rec.status.value,
            "supersedes_id": rec.supersedes_id,
        }
        row.update({name: str(getattr(rec, name)) for name in _MONEY_FIELDS})
        return row

    def create(self, record: CalculationRecord) -> CalculationRecord:
        return self._insert(record)

    def get_committed(
        self, taxpayer_id: str, regime: Regime, period: Period
    ) -> Optional[CalculationRecord]:
        row = (
            self._query()
            .where("taxpayer_id = ?", taxpayer_id)
            .where("regime = ?", regime.value)
            .where("period_key = ?", period.key)
            .where("status = ?", CalculationStatus.COMMITTED.value)
            .fetch_one(self._db().conn)
        )
        return self._map(row) if row else None

    def mark_superseded(self, calculation_id: int) -> bool:
        db = self._db()
        with db.transaction():
            cursor = db.conn.execute(
                "UPDATE calculations SET status = ? WHERE id = ? AND status = ?",
                (
                    CalculationStatus.SUPERSEDED.value,
                    calculation_id,
                    CalculationStatus.COMMITTED.value,
                ),
            )
        return cursor.rowcount == 1

    def history(self, taxpayer_id: str, regime: Regime, period: Period) -> list[CalculationRecord]:
        """Every version for one period, oldest first."""
        rows = (
            self._query()
            .where("taxpayer_id = ?", taxpayer_id)
            .where("regime = ?", regime.value)
            .where("period_key = ?", period.key)
            .order_by("id ASC")
            .fetch_all(self._db().conn)
        )
        return [self._map(r) for r in rows]

    def list_for(
        self,
        taxpayer_id: str,
        regime: Optional[Regime] = None,
        year: Optional[int] = None,
        include_superseded: bool = False,
    ) -> list[CalculationRecord]:
        q = self._query().where("taxpayer_id = ?", taxpayer_id)
        if regime is not None:
            q = q.where("regime = ?", regime.value)
        if year is not None:
            q = q.where("period_year = ?", year)
        if not include_superseded:
            q = q.where("status = ?", CalculationStatus.COMMITTED.value)
        rows = q.order_by("period_year ASC, period_key ASC, id ASC").fetch_all(self._db().conn)
        return [self._map(r) for r in rows]
