"""Integration tests verifying atomic commits and serialized recalculation."""

import sqlite3
import threading
import time
from datetime import date
from decimal import Decimal

import pytest

from income_tax_engine.core.engine import TaxEngine
from income_tax_engine.core.exceptions import (
    LossAllocationConflictError,
    PersistenceFailureError,
)
from income_tax_engine.core.models import (
    CalculationOptions,
    CalculationRequest,
    CalculationStatus,
    ExpenseLine,
    LossRecord,
    Period,
    Regime,
)
from income_tax_engine.data.repositories.advances_repo import AdvancesRepository
from income_tax_engine.data.repositories.audit_repo import AuditRepository
from income_tax_engine.data.repositories.losses_repo import LossesRepository

D = Decimal
CIT = Regime.CORPORATE_STANDARD


def _loss(amount="80000.00"):
    return LossesRepository().create(LossRecord(
        taxpayer_id="ACME", regime=CIT, origin_year=2023,
        original_amount=D(amount), remaining_amount=D(amount), expiration_year=2028,
    ))


def _request(period=Period.annual(2024)):
    return CalculationRequest(
        taxpayer_id="ACME",
        regime=CIT,
        period=period,
        revenue=D("200000"),
        expenses=[ExpenseLine("services", D("50000"))],
        options=CalculationOptions(apply_loss_carry_forward=True),
    )


@pytest.fixture
def engine(catalog):
    return TaxEngine(catalog)


class TestTransactionContextManager:
    def test_rollback_on_error(self, isolated_db):
        """db.transaction() rolls back all writes when an exception is raised."""
        with pytest.raises(RuntimeError):
            with isolated_db.transaction():
                _loss()
                raise RuntimeError("Forced rollback")

        assert LossesRepository().list_for("ACME", CIT) == []

    def test_commit_on_success(self, isolated_db):
        with isolated_db.transaction():
            _loss()
            _loss("1000.00")
        assert len(LossesRepository().list_for("ACME", CIT)) == 2

    def test_nested_transaction_joins_outer(self, isolated_db):
        """An inner block does not commit on its own; the outer rollback undoes it."""
        with pytest.raises(RuntimeError):
            with isolated_db.transaction():
                with isolated_db.transaction():
                    _loss()
                assert isolated_db.in_transaction
                raise RuntimeError("Forced rollback")

        assert LossesRepository().list_for("ACME", CIT) == []
        assert not isolated_db.in_transaction

    def test_transaction_belongs_to_opening_thread(self, isolated_db):
        seen = []
        with isolated_db.transaction():
            t = threading.Thread(target=lambda: seen.append(isolated_db.in_transaction))
            t.start()
            t.join()
            assert isolated_db.in_transaction
        assert seen == [False]


class TestCalculationCommit:
    def test_storage_failure_rolls_back_everything(self, engine, monkeypatch):
        """A failing write late in the commit leaves losses and records untouched."""
        loss = _loss()

        def boom(self, advance):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(AdvancesRepository, "upsert", boom)

        with pytest.raises(PersistenceFailureError) as exc:
            engine.calculate(_request(Period.monthly(2024, 3)))

        assert exc.value.retryable is True
        assert exc.value.failed_stage == CalculationStatus.CALCULATED
        assert exc.value.taxpayer_id == "ACME"
        assert LossesRepository().get_by_id(loss.id).remaining_amount == D("80000.00")
        assert engine.list_calculations("ACME", include_superseded=True) == []
        assert AuditRepository().list_events() == []

    def test_conflict_retried_once(self, engine, monkeypatch):
        """A balance changed under the run is re-read and the commit retried."""
        loss = _loss()
        original = LossesRepository.update_remaining
        calls = []

        def flaky(self, record_id, expected, new_remaining):
            calls.append(record_id)
            if len(calls) == 1:
                return False
            return original(self, record_id, expected, new_remaining)

        monkeypatch.setattr(LossesRepository, "update_remaining", flaky)

        rec = engine.calculate(_request()).record
        assert len(calls) == 2
        assert rec.loss_deduction == D("75000.00")
        assert LossesRepository().get_by_id(loss.id).remaining_amount == D("5000.00")
        assert len(engine.list_calculations("ACME", include_superseded=True)) == 1

    def test_persistent_conflict_surfaces(self, engine, monkeypatch):
        loss = _loss()
        monkeypatch.setattr(LossesRepository, "update_remaining", lambda self, *a: False)

        with pytest.raises(LossAllocationConflictError) as exc:
            engine.calculate(_request())

        assert str(exc.value.period) == "2024"
        assert LossesRepository().get_by_id(loss.id).remaining_amount == D("80000.00")
        assert engine.list_calculations("ACME", include_superseded=True) == []


class TestConcurrentRecalculation:
    def test_same_key_serialized(self, engine):
        """Concurrent runs for one key leave exactly one committed record."""
        loss = _loss()
        errors = []

        def worker():
            try:
                engine.calculate(_request())
            except Exception as e:  # collected and asserted below
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        history = engine.history("ACME", CIT, Period.annual(2024))
        assert len(history) == 4
        assert [r.status for r in history].count(CalculationStatus.COMMITTED) == 1
        # each run released the previous one's 75,000 before taking it again
        assert LossesRepository().get_by_id(loss.id).remaining_amount == D("5000.00")

    def test_payment_survives_unrelated_rollback(self, engine, isolated_db):
        """A payment recorded while another thread's transaction is open is
        committed on its own, not swept into that thread's rollback."""
        engine.reconcile_advance(
            "ACME", CIT, Period.monthly(2024, 1), cumulative_tax=D("1000")
        )
        advance = engine.advance_schedule("ACME", CIT, 2024)[0]
        inside = threading.Event()
        payer_started = threading.Event()
        errors = []

        def failing_writer():
            try:
                with isolated_db.transaction():
                    _loss()
                    inside.set()
                    payer_started.wait(timeout=5)
                    time.sleep(0.05)
                    raise RuntimeError("Forced rollback")
            except RuntimeError:
                pass

        def payer():
            inside.wait(timeout=5)
            payer_started.set()
            try:
                engine.record_advance_payment(advance.id, "1000", date(2024, 2, 15))
            except Exception as e:  # collected and asserted below
                errors.append(e)

        threads = [threading.Thread(target=failing_writer), threading.Thread(target=payer)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert LossesRepository().list_for("ACME", CIT) == []
        paid = engine.advance_schedule("ACME", CIT, 2024)[0]
        assert paid.paid_amount == D("1000.00")
        assert paid.paid_date == date(2024, 2, 15)
