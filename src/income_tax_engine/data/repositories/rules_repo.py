"""Repository for versioned rule entries — the SQLite RuleStore."""

import json
import sqlite3
from datetime import date
from typing import Iterable, Optional

from ...core.models import Regime, RuleEntry, RuleKind
from ..query import BaseRepository


class RulesRepository(BaseRepository[RuleEntry]):
    _table = "rule_entries"

    def _map(self, row: sqlite3.Row) -> RuleEntry:
        kind = RuleKind(row["kind"])
        return RuleEntry(
            regime=Regime(row["regime"]),
            rate_code=row["rate_code"],
            kind=kind,
            value=RuleEntry.decode_value(kind, json.loads(row["value"])),
            effective_from=date.fromisoformat(row["effective_from"]),
            effective_to=date.fromisoformat(row["effective_to"]) if row["effective_to"] else None,
            legal_reference=row["legal_reference"] or "",
            description=row["description"] or "",
            id=row["id"],
        )

    def _to_row(self, entry: RuleEntry) -> dict:
        return {
            "regime": entry.regime.value,
            "rate_code": entry.rate_code,
            "kind": entry.kind.value,
            "value": json.dumps(RuleEntry.encode_value(entry.kind, entry.value), ensure_ascii=False),
            "effective_from": entry.effective_from.isoformat(),
            "effective_to": entry.effective_to.isoformat() if entry.effective_to else None,
            "legal_reference": entry.legal_reference,
            "description": entry.description,
        }

    def list_entries(self) -> list[RuleEntry]:
        rows = (
            self._query()
            .order_by("regime ASC, rate_code ASC, effective_from ASC, id ASC")
            .fetch_all(self._db().conn)
        )
        return [self._map(r) for r in rows]

    def save_version(
        self, entry: RuleEntry, close: Optional[tuple[int, date]] = None
    ) -> RuleEntry:
        """Close the predecessor (if any) and insert ``entry`` atomically."""
        db = self._db()
        with db.transaction():
            if close is not None:
                close_id, close_to = close
                db.conn.execute(
                    "UPDATE rule_entries SET effective_to = ? WHERE id = ?",
                    (close_to.isoformat(), close_id),
                )
            return self._insert(entry)

    def count(self) -> int:
        row = self._db().conn.execute("SELECT COUNT(*) AS n FROM rule_entries").fetchone()
        return row["n"]

    def seed(self, entries: Iterable[RuleEntry]) -> int:
        """Bulk-insert an initial rule set into an empty table."""
        db = self._db()
        n = 0
        with db.transaction():
            for entry in entries:
                self._insert(entry)
                n += 1
        return n
