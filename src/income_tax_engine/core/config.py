"""Application configuration — loaded from config.json at project root."""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass
class AppConfig:
    jurisdiction: str = "PL"
    currency: str = "PLN"
    advance_due_day: int = 20
    rules_feed_url: str = ""


_DEFAULTS = AppConfig()
_cached: Optional[AppConfig] = None


def _config_path() -> Path:
    from ..data.database import _find_project_root
    return _find_project_root() / "config.json"


def get_config() -> AppConfig:
    global _cached
    if _cached is not None:
        return _cached
    path = _config_path()
    if not path.exists():
        _cached = AppConfig()
        return _cached
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        _cached = AppConfig(
            jurisdiction=data.get("jurisdiction", _DEFAULTS.jurisdiction),
            currency=data.get("currency", _DEFAULTS.currency),
            advance_due_day=int(data.get("advance_due_day", _DEFAULTS.advance_due_day)),
            rules_feed_url=data.get("rules_feed_url", _DEFAULTS.rules_feed_url),
        )
    except (OSError, ValueError):
        _cached = AppConfig()
    return _cached


def save_config(cfg: AppConfig) -> None:
    global _cached
    _cached = cfg
    data = {
        "jurisdiction": cfg.jurisdiction,
        "currency": cfg.currency,
        "advance_due_day": cfg.advance_due_day,
        "rules_feed_url": cfg.rules_feed_url,
    }
    _config_path().write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")


def reset_config_cache() -> None:
    global _cached
    _cached = None
