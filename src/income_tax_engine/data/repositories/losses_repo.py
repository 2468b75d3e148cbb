"""Repository for loss records and their applications."""

from decimal import Decimal
from typing import Optional

from ...core.models import LossApplication, LossRecord, Regime
from ..query import BaseRepository, RowMapper


class LossesRepository(BaseRepository[LossRecord]):
    _table = "loss_records"
    _mapper = RowMapper(LossRecord)

    def create(self, record: LossRecord) -> LossRecord:
        return self._insert(record)

    def list_for(self, taxpayer_id: str, regime: Regime) -> list[LossRecord]:
        """All records of one taxpayer and regime, oldest origin year first."""
        rows = (
            self._query()
            .where("taxpayer_id = ?", taxpayer_id)
            .where("regime = ?", regime.value)
            .order_by("origin_year ASC, id ASC")
            .fetch_all(self._db().conn)
        )
        return self._mapper.map_all(rows)

    def list_by_source(self, calculation_id: int) -> list[LossRecord]:
        rows = (
            self._query()
            .where("source_calculation_id = ?", calculation_id)
            .order_by("id ASC")
            .fetch_all(self._db().conn)
        )
        return self._mapper.map_all(rows)

    def update_remaining(self, record_id: int, expected: Decimal, new_remaining: Decimal) -> bool:
        """Compare-and-set ``remaining_amount``.

        Returns False when the stored value no longer equals ``expected``,
        i.e. another calculation touched the record since it was read.
        """
        db = self._db()
        with db.transaction():
            cursor = db.conn.execute(
                "UPDATE loss_records SET remaining_amount = ? "
                "WHERE id = ? AND remaining_amount = ? AND voided = 0",
                (str(new_remaining), record_id, str(expected)),
            )
        return cursor.rowcount == 1

    def void(self, record_id: int) -> None:
        db = self._db()
        with db.transaction():
            db.conn.execute("UPDATE loss_records SET voided = 1 WHERE id = ?", (record_id,))


class LossApplicationsRepository(BaseRepository[LossApplication]):
    _table = "loss_applications"
    _mapper = RowMapper(LossApplication)

    def create(self, application: LossApplication) -> LossApplication:
        return self._insert(application)

    def list_by_calculation(self, calculation_id: int) -> list[LossApplication]:
        rows = (
            self._query()
            .where("calculation_id = ?", calculation_id)
            .order_by("id ASC")
            .fetch_all(self._db().conn)
        )
        return self._mapper.map_all(rows)

    def list_by_record(self, loss_record_id: int) -> list[LossApplication]:
        rows = (
            self._query()
            .where("loss_record_id = ?", loss_record_id)
            .order_by("id ASC")
            .fetch_all(self._db().conn)
        )
        return self._mapper.map_all(rows)

    def held_by(self, calculation_id: int) -> dict[int, Decimal]:
        """loss record id → amount the calculation consumed."""
        return {
            app.loss_record_id: app.amount_applied
            for app in self.list_by_calculation(calculation_id)
            if app.amount_applied > 0
        }

    def get(self, loss_record_id: int, calculation_id: int) -> Optional[LossApplication]:
        row = (
            self._query()
            .where("loss_record_id = ?", loss_record_id)
            .where("calculation_id = ?", calculation_id)
            .fetch_one(self._db().conn)
        )
        return self._mapper.map(row) if row else None
