"""Tests for the remote rule feed (HTTP mocked)."""

from datetime import date
from decimal import Decimal

import pytest
import requests

from income_tax_engine.core.exceptions import RuleConflictError, RuleFeedError
from income_tax_engine.core.models import Regime
from income_tax_engine.external import rules_feed
from income_tax_engine.external.rules_feed import RulesFeed, sync_rules

NEW_RATE = {
    "regime": "corporate-standard",
    "rate_code": "RATE",
    "kind": "rate",
    "value": "0.21",
    "effective_from": "2030-01-01",
    "legal_reference": "Art. 19 ust. 1 pkt 1 ustawy o CIT",
}
KNOWN_RATE = {**NEW_RATE, "value": "0.19", "effective_from": "2004-01-01"}


class _Response:
    def __init__(self, payload, status=200):
        self._payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


@pytest.fixture
def serve(monkeypatch):
    """Patch requests.get to return the given payload."""
    def _serve(payload, status=200):
        monkeypatch.setattr(rules_feed.requests, "get", lambda url, timeout: _Response(payload, status))
    return _serve


class TestFetch:
    def test_parses_entries(self, serve):
        serve({"jurisdiction": "PL", "rules": [NEW_RATE]})
        entries = RulesFeed("https://rules.example/pl.json").fetch(jurisdiction="PL")
        assert len(entries) == 1
        assert entries[0].value == Decimal("0.21")
        assert entries[0].effective_from == date(2030, 1, 1)

    def test_wrong_jurisdiction(self, serve):
        serve({"jurisdiction": "DE", "rules": [NEW_RATE]})
        with pytest.raises(RuleFeedError):
            RulesFeed("https://rules.example/de.json").fetch(jurisdiction="PL")

    def test_http_error(self, serve):
        serve({}, status=503)
        with pytest.raises(RuleFeedError, match="Failed to fetch"):
            RulesFeed("https://rules.example/pl.json").fetch()

    def test_network_error(self, monkeypatch):
        def down(url, timeout):
            raise requests.ConnectionError("connection refused")
        monkeypatch.setattr(rules_feed.requests, "get", down)
        with pytest.raises(RuleFeedError):
            RulesFeed("https://rules.example/pl.json").fetch()

    def test_not_json(self, serve):
        serve(ValueError("Expecting value"))
        with pytest.raises(RuleFeedError):
            RulesFeed("https://rules.example/pl.json").fetch()

    def test_missing_rules_list(self, serve):
        serve({"jurisdiction": "PL"})
        with pytest.raises(RuleFeedError, match="rules"):
            RulesFeed("https://rules.example/pl.json").fetch()

    def test_malformed_entry(self, serve):
        serve({"rules": [{**NEW_RATE, "value": 0.21}]})
        with pytest.raises(RuleFeedError, match="Invalid rule"):
            RulesFeed("https://rules.example/pl.json").fetch()

    @pytest.mark.parametrize("item", ["RATE=0.21", 42, None, ["corporate-standard", "RATE"]])
    def test_non_object_entry(self, serve, item):
        serve({"rules": [NEW_RATE, item]})
        with pytest.raises(RuleFeedError, match="Invalid rule"):
            RulesFeed("https://rules.example/pl.json").fetch()

    def test_wrongly_typed_date(self, serve):
        serve({"rules": [{**NEW_RATE, "effective_from": 20300101}]})
        with pytest.raises(RuleFeedError, match="Invalid rule"):
            RulesFeed("https://rules.example/pl.json").fetch()

    def test_non_finite_rate(self, serve):
        serve({"rules": [{**NEW_RATE, "value": "NaN"}]})
        with pytest.raises(RuleFeedError, match="Invalid rule"):
            RulesFeed("https://rules.example/pl.json").fetch()

    def test_url_required(self):
        with pytest.raises(RuleFeedError):
            RulesFeed("")


class TestSync:
    def test_adds_only_new_versions(self, serve, catalog):
        serve({"jurisdiction": "PL", "rules": [KNOWN_RATE, NEW_RATE]})
        entries = RulesFeed("https://rules.example/pl.json").fetch()

        added = sync_rules(catalog, entries, today=date(2026, 10, 18))

        assert [(e.rate_code, e.effective_from) for e in added] == [("RATE", date(2030, 1, 1))]
        assert catalog.value(Regime.CORPORATE_STANDARD, "RATE", date(2029, 12, 31)) == Decimal("0.19")
        assert catalog.value(Regime.CORPORATE_STANDARD, "RATE", date(2030, 1, 1)) == Decimal("0.21")

    def test_second_sync_is_a_no_op(self, serve, catalog):
        serve({"rules": [NEW_RATE]})
        entries = RulesFeed("https://rules.example/pl.json").fetch()
        sync_rules(catalog, entries, today=date(2026, 10, 18))
        assert sync_rules(catalog, entries, today=date(2026, 10, 18)) == []

    def test_backdated_version_refused(self, serve, catalog):
        serve({"rules": [{**NEW_RATE, "effective_from": "2025-01-01"}]})
        entries = RulesFeed("https://rules.example/pl.json").fetch()
        with pytest.raises(RuleConflictError):
            sync_rules(catalog, entries, today=date(2026, 10, 18))
