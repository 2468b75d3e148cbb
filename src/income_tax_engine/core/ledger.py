"""Loss Ledger — owns loss records and every change to their balances.

Reads go through the pure allocation in core.tax.losses; writes happen only
here, inside the caller's transaction, so the cap invariant is enforced in
one place.
"""

import json
from datetime import date
from decimal import Decimal
from typing import Optional

import structlog

from ..data.repositories.audit_repo import AuditRepository
from ..data.repositories.losses_repo import LossApplicationsRepository, LossesRepository
from .exceptions import InvalidAmountError, InvalidInputError, LossAllocationConflictError
from .models import AuditEvent, LossApplication, LossRecord, Period, Regime, RuleKind
from .money import round_money, to_decimal
from .rules.catalog import RuleCatalog
from .tax.losses import LossAllocation, allocate_losses

logger = structlog.get_logger()


def _year_end(year: int) -> date:
    return date(year, 12, 31)


class LossLedger:
    def __init__(
        self,
        catalog: RuleCatalog,
        losses: Optional[LossesRepository] = None,
        applications: Optional[LossApplicationsRepository] = None,
        audit: Optional[AuditRepository] = None,
    ):
        self._catalog = catalog
        self._losses = losses or LossesRepository()
        self._applications = applications or LossApplicationsRepository()
        self._audit = audit or AuditRepository()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def records(self, taxpayer_id: str, regime: Regime) -> list[LossRecord]:
        return self._losses.list_for(taxpayer_id, regime)

    def active(self, taxpayer_id: str, regime: Regime, year: int) -> list[LossRecord]:
        return [r for r in self.records(taxpayer_id, regime) if r.is_active(year)]

    def held_by(self, calculation_id: int) -> dict[int, Decimal]:
        return self._applications.held_by(calculation_id)

    def plan(
        self,
        taxpayer_id: str,
        regime: Regime,
        year: int,
        income: Decimal,
        cap_rate: Optional[Decimal] = None,
        released: Optional[dict[int, Decimal]] = None,
    ) -> LossAllocation:
        """Read-only: how much loss would offset ``income`` in ``year``."""
        if cap_rate is None:
            cap_rate = self._catalog.value(regime, "LOSS_CAP", _year_end(year), RuleKind.RATE)
        return allocate_losses(self.records(taxpayer_id, regime), year, income, cap_rate, released)

    # ------------------------------------------------------------------
    # Writes (call inside Database.transaction())
    # ------------------------------------------------------------------

    def record_loss(
        self,
        taxpayer_id: str,
        regime: Regime,
        year: int,
        amount,
        source_calculation_id: Optional[int] = None,
    ) -> LossRecord:
        amount = to_decimal(amount, "loss amount")
        if amount <= 0:
            raise InvalidAmountError(
                f"Loss amount must be positive, got {amount}",
                taxpayer_id=taxpayer_id, regime=regime, period=str(year),
            )
        amount = round_money(amount)
        window = int(self._catalog.value(
            regime, "LOSS_CARRY_FORWARD_YEARS", _year_end(year), RuleKind.AMOUNT
        ))
        record = self._losses.create(LossRecord(
            taxpayer_id=taxpayer_id,
            regime=regime,
            origin_year=year,
            original_amount=amount,
            remaining_amount=amount,
            expiration_year=year + window,
            source_calculation_id=source_calculation_id,
        ))
        self._audit.record(AuditEvent(
            event_type="loss_recorded",
            taxpayer_id=taxpayer_id,
            regime=regime.value,
            period_key=Period.annual(year).key,
            calculation_id=source_calculation_id,
            loss_record_id=record.id,
            after_state=json.dumps({"remaining_amount": str(amount), "expiration_year": record.expiration_year}),
        ))
        logger.info(
            "loss_recorded",
            taxpayer_id=taxpayer_id,
            regime=regime.value,
            origin_year=year,
            amount=str(amount),
            expiration_year=record.expiration_year,
            loss_record_id=record.id,
        )
        return record

    def apply(
        self, allocation: LossAllocation, calculation_id: int, period_key: str = ""
    ) -> list[LossApplication]:
        """Persist ``allocation`` for ``calculation_id``.

        Each balance is updated only if it still holds the value the plan
        was based on.

        Raises:
            LossAllocationConflictError: a record changed since planning.
        """
        applications = []
        for s in allocation.slices:
            record = s.record
            new_remaining = s.remaining_after
            if not self._losses.update_remaining(record.id, record.remaining_amount, new_remaining):
                raise LossAllocationConflictError(
                    f"Loss record {record.id} changed during allocation",
                    taxpayer_id=record.taxpayer_id, regime=record.regime, period=period_key,
                )
            applications.append(self._applications.create(LossApplication(
                loss_record_id=record.id,
                calculation_id=calculation_id,
                amount_applied=s.applied,
                remaining_after=new_remaining,
                amount_released=s.released,
            )))
            self._audit.record(AuditEvent(
                event_type="loss_applied",
                taxpayer_id=record.taxpayer_id,
                regime=record.regime.value,
                period_key=period_key,
                calculation_id=calculation_id,
                loss_record_id=record.id,
                before_state=json.dumps({"remaining_amount": str(record.remaining_amount)}),
                after_state=json.dumps({
                    "remaining_amount": str(new_remaining),
                    "applied": str(s.applied),
                    "released": str(s.released),
                }),
            ))
            logger.info(
                "loss_applied",
                taxpayer_id=record.taxpayer_id,
                regime=record.regime.value,
                loss_record_id=record.id,
                calculation_id=calculation_id,
                applied=str(s.applied),
                released=str(s.released),
                remaining_before=str(record.remaining_amount),
                remaining_after=str(new_remaining),
            )
        return applications

    def void_losses_from(self, calculation_id: int) -> list[LossRecord]:
        """Void loss records created by a calculation that is being superseded.

        Raises:
            InvalidInputError: another calculation already consumed the loss;
                that calculation must be recalculated without it first.
        """
        voided = []
        for record in self._losses.list_by_source(calculation_id):
            if record.voided:
                continue
            if record.remaining_amount != record.original_amount:
                raise InvalidInputError(
                    f"Loss from {record.origin_year} is already used by a later year "
                    f"({record.original_amount - record.remaining_amount} consumed)",
                    taxpayer_id=record.taxpayer_id,
                    regime=record.regime,
                    period=str(record.origin_year),
                )
            self._losses.void(record.id)
            self._audit.record(AuditEvent(
                event_type="loss_voided",
                taxpayer_id=record.taxpayer_id,
                regime=record.regime.value,
                period_key=Period.annual(record.origin_year).key,
                calculation_id=calculation_id,
                loss_record_id=record.id,
                before_state=json.dumps({"remaining_amount": str(record.remaining_amount)}),
                after_state=json.dumps({"voided": True}),
            ))
            voided.append(record)
        return voided
