"""Integration tests for the SQLite repositories."""

import sqlite3
from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from income_tax_engine.core.models import (
    AdvanceMethod,
    AdvancePayment,
    AuditEvent,
    BracketLine,
    CalculationRecord,
    CalculationStatus,
    LossApplication,
    LossRecord,
    Period,
    Regime,
    RuleKind,
)
from income_tax_engine.core.rules import RuleCatalog, default_rules
from income_tax_engine.data.database import SCHEMA, Database
from income_tax_engine.data.repositories.advances_repo import AdvancesRepository
from income_tax_engine.data.repositories.audit_repo import AuditRepository
from income_tax_engine.data.repositories.calculations_repo import CalculationsRepository
from income_tax_engine.data.repositories.losses_repo import (
    LossApplicationsRepository,
    LossesRepository,
)
from income_tax_engine.data.repositories.rules_repo import RulesRepository

D = Decimal


def _loss(amount="80000.00", year=2023):
    return LossesRepository().create(LossRecord(
        taxpayer_id="ACME",
        regime=Regime.CORPORATE_STANDARD,
        origin_year=year,
        original_amount=D(amount),
        remaining_amount=D(amount),
        expiration_year=year + 5,
    ))


def _calc(status=CalculationStatus.COMMITTED, period=Period.annual(2024), **kw):
    return CalculationsRepository().create(CalculationRecord(
        taxpayer_id="ACME",
        regime=Regime.CORPORATE_STANDARD,
        period=period,
        status=status,
        **kw,
    ))


class TestRulesRepository:
    def test_seed_and_resolve(self):
        repo = RulesRepository()
        n = repo.seed(default_rules())
        assert n == repo.count() == len(default_rules())

        catalog = RuleCatalog(repo)
        assert catalog.value(Regime.CORPORATE_SMALL, "RATE", date(2024, 1, 1)) == D("0.09")

    def test_scale_stored_as_json(self):
        repo = RulesRepository()
        repo.seed(default_rules())
        in_memory = RuleCatalog.with_defaults()
        stored = RuleCatalog(repo)

        as_of = date(2024, 12, 31)
        assert (
            stored.value(Regime.PERSONAL_PROGRESSIVE, "SCALE", as_of, RuleKind.SCALE)
            == in_memory.value(Regime.PERSONAL_PROGRESSIVE, "SCALE", as_of, RuleKind.SCALE)
        )
        assert stored.value(Regime.PERSONAL_PROGRESSIVE, "CHILD_RELIEF", as_of)[2] == D("2000.04")
        policy = stored.value(Regime.CORPORATE_STANDARD, "EXPENSE_POLICY", as_of)
        assert policy.categories["vehicle"].deductible_share == D("0.75")

    def test_new_version_persists_closing(self):
        repo = RulesRepository()
        repo.seed(default_rules())
        catalog = RuleCatalog(repo)
        current = catalog.resolve(Regime.CORPORATE_STANDARD, "RATE", date(2024, 1, 1))

        catalog.add(
            replace(current, value=D("0.21"), effective_from=date(2030, 1, 1), id=None),
            today=date(2026, 10, 18),
        )

        # A fresh catalog over the same table sees the closed predecessor
        reloaded = RuleCatalog(RulesRepository())
        first, second = reloaded.history(Regime.CORPORATE_STANDARD, "RATE")
        assert first.effective_to == date(2029, 12, 31)
        assert second.value == D("0.21")


class TestLossesRepository:
    def test_round_trip(self):
        record = _loss()
        assert record.id is not None
        assert record.remaining_amount == D("80000.00")
        assert record.voided is False
        assert record.created_at is not None

    def test_compare_and_set(self):
        repo = LossesRepository()
        record = _loss()
        assert repo.update_remaining(record.id, D("80000.00"), D("5000.00")) is True
        # stale expectation no longer matches
        assert repo.update_remaining(record.id, D("80000.00"), D("0.00")) is False
        assert repo.get_by_id(record.id).remaining_amount == D("5000.00")

    def test_voided_record_cannot_be_updated(self):
        repo = LossesRepository()
        record = _loss()
        repo.void(record.id)
        assert repo.get_by_id(record.id).voided is True
        assert repo.update_remaining(record.id, D("80000.00"), D("0.00")) is False

    def test_list_order(self):
        b = _loss(year=2022)
        a = _loss(year=2020)
        c = _loss(year=2022)
        ids = [r.id for r in LossesRepository().list_for("ACME", Regime.CORPORATE_STANDARD)]
        assert ids == [a.id, b.id, c.id]
        assert LossesRepository().list_for("ACME", Regime.CORPORATE_SMALL) == []

    def test_applications_held_by(self):
        record = _loss()
        calc = _calc()
        apps = LossApplicationsRepository()
        apps.create(LossApplication(record.id, calc.id, D("75000.00"), D("5000.00")))
        assert apps.held_by(calc.id) == {record.id: D("75000.00")}
        assert apps.get(record.id, calc.id).remaining_after == D("5000.00")

    def test_application_unique_per_calculation(self):
        record = _loss()
        calc = _calc()
        apps = LossApplicationsRepository()
        apps.create(LossApplication(record.id, calc.id, D("1"), D("79999.00")))
        with pytest.raises(sqlite3.IntegrityError):
            apps.create(LossApplication(record.id, calc.id, D("1"), D("79998.00")))


class TestCalculationsRepository:
    def test_round_trip_with_json_columns(self):
        saved = _calc(
            revenue=D("200000"),
            total_tax=D("28500.00"),
            brackets=[BracketLine("Flat 19%", D("0.19"), D("150000"), D("28500.00"))],
            notes=["Supersedes calculation #1"],
            due_date=date(2024, 4, 20),
        )
        loaded = CalculationsRepository().get_by_id(saved.id)
        assert loaded.total_tax == D("28500.00")
        assert loaded.brackets[0].tax == D("28500.00")
        assert loaded.notes == ["Supersedes calculation #1"]
        assert loaded.period == Period.annual(2024)
        assert loaded.due_date == date(2024, 4, 20)

    def test_one_committed_per_key(self):
        _calc()
        with pytest.raises(sqlite3.IntegrityError):
            _calc()

    def test_superseded_versions_allowed(self):
        repo = CalculationsRepository()
        first = _calc()
        assert repo.mark_superseded(first.id) is True
        assert repo.mark_superseded(first.id) is False
        second = _calc()
        assert repo.get_committed("ACME", Regime.CORPORATE_STANDARD, Period.annual(2024)).id == second.id
        assert [r.id for r in repo.history("ACME", Regime.CORPORATE_STANDARD, Period.annual(2024))] == [
            first.id, second.id,
        ]

    def test_list_for_filters(self):
        repo = CalculationsRepository()
        old = _calc(period=Period.annual(2023))
        _calc(period=Period.monthly(2024, 1))
        repo.mark_superseded(old.id)
        assert [r.period.key for r in repo.list_for("ACME")] == ["2024-01"]
        assert len(repo.list_for("ACME", include_superseded=True)) == 2
        assert repo.list_for("ACME", year=2023) == []


class TestAdvancesRepository:
    def _advance(self, due="9500.00"):
        return AdvancePayment(
            taxpayer_id="ACME",
            regime=Regime.CORPORATE_STANDARD,
            period=Period.monthly(2024, 1),
            method=AdvanceMethod.CUMULATIVE,
            due_amount=D(due),
            due_date=date(2024, 2, 20),
        )

    def test_upsert_keeps_payment(self):
        repo = AdvancesRepository()
        first = repo.upsert(self._advance())
        repo.record_payment(first.id, D("9500.00"), date(2024, 2, 19))

        again = repo.upsert(self._advance(due="9800.00"))
        assert again.id == first.id
        assert again.due_amount == D("9800.00")
        assert again.paid_amount == D("9500.00")
        assert again.paid_date == date(2024, 2, 19)

    def test_record_payment_unknown_id(self):
        assert AdvancesRepository().record_payment(999, D("1"), date(2024, 1, 1)) is None

    def test_list_for_year(self):
        repo = AdvancesRepository()
        repo.upsert(self._advance())
        rows = repo.list_for_year("ACME", Regime.CORPORATE_STANDARD, 2024)
        assert [r.period.key for r in rows] == ["2024-01"]
        assert repo.list_for_year("ACME", Regime.CORPORATE_STANDARD, 2025) == []


class TestAuditRepository:
    def test_record_and_filter(self):
        repo = AuditRepository()
        repo.record(AuditEvent("loss_recorded", "ACME", "corporate-standard", "2023", loss_record_id=1))
        repo.record(AuditEvent("calculation_committed", "ACME", "corporate-standard", "2024", calculation_id=7))
        repo.record(AuditEvent("calculation_committed", "OTHER", "corporate-standard", "2024"))

        assert len(repo.list_events(taxpayer_id="ACME")) == 2
        events = repo.list_events(calculation_id=7)
        assert [e.event_type for e in events] == ["calculation_committed"]
        assert events[0].after_state == "{}"
        assert events[0].created_at is not None


class TestSchemaMigrations:
    def test_columns_added_to_existing_database(self, tmp_path):
        """A database created before exempt revenue and ZUS existed gains both columns."""
        path = tmp_path / "old.db"
        old_schema = (
            SCHEMA.replace("    exempt_revenue TEXT NOT NULL DEFAULT '0',\n", "")
            .replace("    zus_deduction TEXT NOT NULL DEFAULT '0',\n", "")
        )
        conn = sqlite3.connect(path)
        conn.executescript(old_schema)
        conn.close()

        db = Database(str(path))
        db.initialize()
        db.initialize()  # second run is a no-op
        columns = {row[1] for row in db.conn.execute("PRAGMA table_info(calculations)")}
        db.close()
        assert {"exempt_revenue", "zus_deduction"} <= columns
