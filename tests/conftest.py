"""Shared pytest fixtures for income tax engine tests."""

import pytest
import structlog

import income_tax_engine.data.database as dbmod
from income_tax_engine.core.config import reset_config_cache
from income_tax_engine.core.rules.catalog import RuleCatalog
from income_tax_engine.data.database import get_db, set_db_path


@pytest.fixture(autouse=True)
def isolated_db(tmp_path):
    """Each test gets a fresh temp DB. Resets the global singleton after."""
    reset_config_cache()
    db_path = tmp_path / "test.db"
    set_db_path(str(db_path))
    db = get_db()
    yield db
    db.conn.close()
    dbmod._db = None
    reset_config_cache()


@pytest.fixture(autouse=True)
def reset_logging():
    """CLI tests reconfigure structlog; restore defaults for the next test."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def catalog():
    """In-memory catalog with the default Polish rule set."""
    return RuleCatalog.with_defaults()
