"""Rule Catalog — answers "which rule version was in force on date D".

Entries are versioned, never edited: a new version closes its open-ended
predecessor the day before it starts. Lookups are cached per
(regime, rate_code, date); the cache is dropped whenever a version is added.
"""

import dataclasses
import threading
from datetime import date, timedelta
from typing import Any, Iterable, Optional, Protocol

import structlog

from ..exceptions import RuleConflictError, RuleNotFoundError
from ..models import Regime, RuleEntry, RuleKind

logger = structlog.get_logger()


class RuleStore(Protocol):
    """Backing storage for a RuleCatalog."""

    def list_entries(self) -> list[RuleEntry]:
        ...

    def save_version(
        self, entry: RuleEntry, close: Optional[tuple[int, date]] = None
    ) -> RuleEntry:
        """Insert ``entry``; if ``close`` is given, set effective_to on that id first."""
        ...


class InMemoryRuleStore:
    """Store for synthetic rule sets (tests, previews)."""

    def __init__(self, entries: Iterable[RuleEntry] = ()):
        self._entries: list[RuleEntry] = []
        self._next_id = 1
        for e in entries:
            self._append(e)

    def _append(self, entry: RuleEntry) -> RuleEntry:
        entry = dataclasses.replace(entry, id=self._next_id)
        self._next_id += 1
        self._entries.append(entry)
        return entry

    def list_entries(self) -> list[RuleEntry]:
        return list(self._entries)

    def save_version(self, entry, close=None):
        if close is not None:
            close_id, close_to = close
            self._entries = [
                dataclasses.replace(e, effective_to=close_to) if e.id == close_id else e
                for e in self._entries
            ]
        return self._append(entry)


class RuleCatalog:
    def __init__(self, store: Optional[RuleStore] = None):
        self._store = store if store is not None else InMemoryRuleStore()
        self._entries: Optional[list[RuleEntry]] = None
        self._cache: dict[tuple, RuleEntry] = {}
        self._lock = threading.RLock()

    @classmethod
    def from_entries(cls, entries: Iterable[RuleEntry]) -> "RuleCatalog":
        return cls(InMemoryRuleStore(entries))

    @classmethod
    def with_defaults(cls) -> "RuleCatalog":
        from .defaults import default_rules
        return cls.from_entries(default_rules())

    def _all(self) -> list[RuleEntry]:
        with self._lock:
            if self._entries is None:
                self._entries = sorted(
                    self._store.list_entries(),
                    key=lambda e: (e.regime.value, e.rate_code, e.effective_from, e.id or 0),
                )
            return self._entries

    def invalidate(self) -> None:
        with self._lock:
            self._entries = None
            self._cache.clear()

    def entries(self) -> list[RuleEntry]:
        return list(self._all())

    def history(self, regime: Regime, rate_code: str) -> list[RuleEntry]:
        """All versions of one rule, oldest first."""
        return [e for e in self._all() if e.regime == regime and e.rate_code == rate_code]

    def resolve(self, regime: Regime, rate_code: str, as_of: date) -> RuleEntry:
        key = (regime, rate_code, as_of)
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                return cached
            matches = [e for e in self.history(regime, rate_code) if e.covers(as_of)]
            if not matches:
                raise RuleNotFoundError(
                    f"No rule {rate_code} in force on {as_of.isoformat()}", regime=regime
                )
            # Non-overlap invariant → exactly one match
            entry = matches[0]
            self._cache[key] = entry
            return entry

    def find(self, regime: Regime, rate_code: str, as_of: date) -> Optional[RuleEntry]:
        """Like resolve(), but None for optional rules not in force on ``as_of``."""
        if not any(e.covers(as_of) for e in self.history(regime, rate_code)):
            return None
        return self.resolve(regime, rate_code, as_of)

    def value(
        self, regime: Regime, rate_code: str, as_of: date, kind: Optional[RuleKind] = None
    ) -> Any:
        """Resolve and return the rule value, checking its kind when given."""
        entry = self.resolve(regime, rate_code, as_of)
        if kind is not None and entry.kind != kind:
            raise RuleConflictError(
                f"Rule {rate_code} is a {entry.kind.value}, expected {kind.value}", regime=regime
            )
        return entry.value

    def add(self, entry: RuleEntry, today: Optional[date] = None) -> RuleEntry:
        """Insert a new rule version.

        The open-ended predecessor (if any) is closed the day before
        ``entry.effective_from``. Any other overlap is a conflict. When
        ``today`` is given, versions starting on or before it are refused:
        periods already underway must keep resolving to the same value.
        """
        if entry.effective_to is not None and entry.effective_to < entry.effective_from:
            raise RuleConflictError(
                f"Rule {entry.rate_code}: effective_to before effective_from", regime=entry.regime
            )
        if today is not None and entry.effective_from <= today:
            raise RuleConflictError(
                f"Rule {entry.rate_code}: cannot backdate a version to "
                f"{entry.effective_from.isoformat()} (today is {today.isoformat()})",
                regime=entry.regime,
            )

        with self._lock:
            to_close: Optional[RuleEntry] = None
            for existing in self.history(entry.regime, entry.rate_code):
                if not existing.overlaps(entry):
                    continue
                if existing.effective_to is None and existing.effective_from < entry.effective_from:
                    to_close = existing
                    continue
                raise RuleConflictError(
                    f"Rule {entry.rate_code} overlaps version starting "
                    f"{existing.effective_from.isoformat()}",
                    regime=entry.regime,
                )

            close = None
            if to_close is not None:
                close = (to_close.id, entry.effective_from - timedelta(days=1))
            saved = self._store.save_version(entry, close)
            self.invalidate()

        logger.info(
            "rule_added",
            regime=saved.regime.value,
            rate_code=saved.rate_code,
            effective_from=saved.effective_from.isoformat(),
            closed_previous=to_close.id if to_close else None,
        )
        return saved
