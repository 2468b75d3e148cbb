"""Remote rule feed — pulls published rule versions over HTTP.

Expected payload:
    {"jurisdiction": "PL", "rules": [{"regime": ..., "rate_code": ...,
      "kind": ..., "value": ..., "effective_from": "YYYY-MM-DD", ...}]}

Fetching happens before any calculation; the engine itself never does I/O
against the feed.
"""

from datetime import date
from typing import Optional

import requests
import structlog

from ..core.exceptions import RuleFeedError, TaxEngineError
from ..core.models import RuleEntry
from ..core.rules.catalog import RuleCatalog

logger = structlog.get_logger()


class RulesFeed:
    """Fetches rule entries from a JSON endpoint."""

    def __init__(self, url: str, timeout: int = 10):
        if not url:
            raise RuleFeedError("No rules feed URL configured (set rules_feed_url in config.json)")
        self.url = url
        self.timeout = timeout

    def fetch(self, jurisdiction: Optional[str] = None) -> list[RuleEntry]:
        try:
            resp = requests.get(self.url, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise RuleFeedError(f"Failed to fetch rules from {self.url}: {e}")

        if not isinstance(data, dict) or not isinstance(data.get("rules"), list):
            raise RuleFeedError(f"Unexpected payload from {self.url}: missing 'rules' list")
        if jurisdiction and data.get("jurisdiction", jurisdiction) != jurisdiction:
            raise RuleFeedError(
                f"Feed publishes rules for {data.get('jurisdiction')}, expected {jurisdiction}"
            )

        try:
            return [RuleEntry.from_dict(item) for item in data["rules"]]
        except TaxEngineError as e:
            raise RuleFeedError(f"Invalid rule in feed: {e.message}")


def sync_rules(catalog: RuleCatalog, entries: list[RuleEntry], today: date) -> list[RuleEntry]:
    """Add feed entries the catalog doesn't know yet.

    Versions already present (same regime, code and start date) are
    skipped. New versions must start after ``today``.
    """
    known = {(e.regime, e.rate_code, e.effective_from) for e in catalog.entries()}
    added = []
    for entry in sorted(entries, key=lambda e: (e.regime.value, e.rate_code, e.effective_from)):
        if (entry.regime, entry.rate_code, entry.effective_from) in known:
            continue
        added.append(catalog.add(entry, today=today))
    logger.info("rules_synced", fetched=len(entries), added=len(added))
    return added
