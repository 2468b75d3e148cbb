"""Repository for advance (installment) payments."""

import sqlite3
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from ...core.models import AdvanceMethod, AdvancePayment, Period, Regime
from ..query import BaseRepository


def _opt_decimal(v) -> Optional[Decimal]:
    return Decimal(v) if v is not None else None


class AdvancesRepository(BaseRepository[AdvancePayment]):
    _table = "advance_payments"

    def _map(self, row: sqlite3.Row) -> AdvancePayment:
        return AdvancePayment(
            taxpayer_id=row["taxpayer_id"],
            regime=Regime(row["regime"]),
            period=Period.parse(row["period_key"]),
            method=AdvanceMethod(row["method"]),
            due_amount=Decimal(row["due_amount"]),
            due_date=date.fromisoformat(row["due_date"]),
            cumulative_tax=Decimal(row["cumulative_tax"]),
            prior_advances_paid=Decimal(row["prior_advances_paid"]),
            paid_amount=_opt_decimal(row["paid_amount"]),
            paid_date=date.fromisoformat(row["paid_date"]) if row["paid_date"] else None,
            id=row["id"],
            created_at=datetime.fromisoformat(row["created_at"]) if row["created_at"] else None,
        )

    def get(self, taxpayer_id: str, regime: Regime, period: Period) -> Optional[AdvancePayment]:
        row = (
            self._query()
            .where("taxpayer_id = ?", taxpayer_id)
            .where("regime = ?", regime.value)
            .where("period_key = ?", period.key)
            .fetch_one(self._db().conn)
        )
        return self._map(row) if row else None

    def upsert(self, advance: AdvancePayment) -> AdvancePayment:
        """Insert or refresh the installment for one period.

        A recalculation replaces the figures; a payment already recorded
        against the period is kept.
        """
        db = self._db()
        with db.transaction():
            db.conn.execute(
                """
                INSERT INTO advance_payments
                    (taxpayer_id, regime, period_key, period_year, method,
                     cumulative_tax, prior_advances_paid, due_amount, due_date)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(taxpayer_id, regime, period_key) DO UPDATE SET
                    method = excluded.method,
                    cumulative_tax = excluded.cumulative_tax,
                    prior_advances_paid = excluded.prior_advances_paid,
                    due_amount = excluded.due_amount,
                    due_date = excluded.due_date,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    advance.taxpayer_id,
                    advance.regime.value,
                    advance.period.key,
                    advance.period.year,
                    advance.method.value,
                    str(advance.cumulative_tax),
                    str(advance.prior_advances_paid),
                    str(advance.due_amount),
                    advance.due_date.isoformat(),
                ),
            )
        return self.get(advance.taxpayer_id, advance.regime, advance.period)

    def record_payment(self, advance_id: int, amount: Decimal, paid_date: date) -> Optional[AdvancePayment]:
        db = self._db()
        with db.transaction():
            cursor = db.conn.execute(
                "UPDATE advance_payments SET paid_amount = ?, paid_date = ?, "
                "updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (str(amount), paid_date.isoformat(), advance_id),
            )
        if cursor.rowcount == 0:
            return None
        return self.get_by_id(advance_id)

    def list_for_year(self, taxpayer_id: str, regime: Regime, year: int) -> list[AdvancePayment]:
        rows = (
            self._query()
            .where("taxpayer_id = ?", taxpayer_id)
            .where("regime = ?", regime.value)
            .where("period_year = ?", year)
            .order_by("due_date ASC, id ASC")
            .fetch_all(self._db().conn)
        )
        return [self._map(r) for r in rows]
