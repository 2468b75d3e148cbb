"""Append-only audit trail."""

from typing import Optional

from ...core.models import AuditEvent
from ..query import BaseRepository, RowMapper


class AuditRepository(BaseRepository[AuditEvent]):
    _table = "audit_events"
    _mapper = RowMapper(AuditEvent)

    def record(self, event: AuditEvent) -> AuditEvent:
        return self._insert(event)

    def list_events(
        self,
        taxpayer_id: Optional[str] = None,
        calculation_id: Optional[int] = None,
        event_type: Optional[str] = None,
    ) -> list[AuditEvent]:
        q = self._query()
        if taxpayer_id is not None:
            q = q.where("taxpayer_id = ?", taxpayer_id)
        if calculation_id is not None:
            q = q.where("calculation_id = ?", calculation_id)
        if event_type is not None:
            q = q.where("event_type = ?", event_type)
        return self._mapper.map_all(q.order_by("id ASC").fetch_all(self._db().conn))
