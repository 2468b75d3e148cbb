"""SQLite database connection and schema management."""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS rule_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    regime TEXT NOT NULL,
    rate_code TEXT NOT NULL,
    kind TEXT NOT NULL,
    value TEXT NOT NULL,
    effective_from DATE NOT NULL,
    effective_to DATE DEFAULT NULL,
    legal_reference TEXT DEFAULT '',
    description TEXT DEFAULT '',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS calculations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    taxpayer_id TEXT NOT NULL,
    regime TEXT NOT NULL,
    period_key TEXT NOT NULL,
    period_year INTEGER NOT NULL,
    revenue TEXT NOT NULL,
    exempt_revenue TEXT NOT NULL DEFAULT '0',
    expenses TEXT NOT NULL,
    non_deductible_total TEXT NOT NULL,
    gross_income TEXT NOT NULL,
    zus_deduction TEXT NOT NULL DEFAULT '0',
    loss_deduction TEXT NOT NULL,
    taxable_income TEXT NOT NULL,
    rate_code TEXT NOT NULL,
    rate_label TEXT DEFAULT '',
    allowance TEXT NOT NULL DEFAULT '0',
    tax_amount TEXT NOT NULL,
    child_relief TEXT NOT NULL DEFAULT '0',
    health_deduction TEXT NOT NULL DEFAULT '0',
    solidarity_surcharge TEXT NOT NULL DEFAULT '0',
    total_tax TEXT NOT NULL,
    effective_rate TEXT NOT NULL DEFAULT '0',
    brackets TEXT NOT NULL DEFAULT '[]',
    expense_lines TEXT NOT NULL DEFAULT '[]',
    notes TEXT NOT NULL DEFAULT '[]',
    prior_advances_paid TEXT NOT NULL DEFAULT '0',
    installment_due TEXT NOT NULL DEFAULT '0',
    due_date DATE DEFAULT NULL,
    status TEXT NOT NULL,
    supersedes_id INTEGER DEFAULT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (supersedes_id) REFERENCES calculations(id)
);

CREATE TABLE IF NOT EXISTS loss_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    taxpayer_id TEXT NOT NULL,
    regime TEXT NOT NULL,
    origin_year INTEGER NOT NULL,
    original_amount TEXT NOT NULL,
    remaining_amount TEXT NOT NULL,
    expiration_year INTEGER NOT NULL,
    source_calculation_id INTEGER DEFAULT NULL,
    voided INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (source_calculation_id) REFERENCES calculations(id)
);

CREATE TABLE IF NOT EXISTS loss_applications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    loss_record_id INTEGER NOT NULL,
    calculation_id INTEGER NOT NULL,
    amount_applied TEXT NOT NULL,
    remaining_after TEXT NOT NULL,
    amount_released TEXT NOT NULL DEFAULT '0',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (loss_record_id) REFERENCES loss_records(id),
    FOREIGN KEY (calculation_id) REFERENCES calculations(id),
    UNIQUE(loss_record_id, calculation_id)
);

CREATE TABLE IF NOT EXISTS advance_payments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    taxpayer_id TEXT NOT NULL,
    regime TEXT NOT NULL,
    period_key TEXT NOT NULL,
    period_year INTEGER NOT NULL,
    method TEXT NOT NULL,
    cumulative_tax TEXT NOT NULL DEFAULT '0',
    prior_advances_paid TEXT NOT NULL DEFAULT '0',
    due_amount TEXT NOT NULL,
    due_date DATE NOT NULL,
    paid_amount TEXT DEFAULT NULL,
    paid_date DATE DEFAULT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(taxpayer_id, regime, period_key)
);

CREATE TABLE IF NOT EXISTS audit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    taxpayer_id TEXT NOT NULL,
    regime TEXT NOT NULL,
    period_key TEXT DEFAULT '',
    calculation_id INTEGER DEFAULT NULL,
    loss_record_id INTEGER DEFAULT NULL,
    before_state TEXT NOT NULL DEFAULT '{}',
    after_state TEXT NOT NULL DEFAULT '{}',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_rule_entries_code ON rule_entries(regime, rate_code, effective_from);
CREATE INDEX IF NOT EXISTS idx_calculations_key ON calculations(taxpayer_id, regime, period_key);
CREATE UNIQUE INDEX IF NOT EXISTS idx_calculations_committed
    ON calculations(taxpayer_id, regime, period_key) WHERE status = 'committed';
CREATE INDEX IF NOT EXISTS idx_loss_records_owner ON loss_records(taxpayer_id, regime, origin_year);
CREATE INDEX IF NOT EXISTS idx_loss_applications_calc ON loss_applications(calculation_id);
CREATE INDEX IF NOT EXISTS idx_advance_payments_year ON advance_payments(taxpayer_id, regime, period_year);
CREATE INDEX IF NOT EXISTS idx_audit_events_calc ON audit_events(calculation_id);
"""


# Columns added after the first release, for databases created before them.
# Each entry is (table, column, DDL); a column already present is skipped.
_COLUMN_MIGRATIONS = [
    ("calculations", "exempt_revenue",
     "ALTER TABLE calculations ADD COLUMN exempt_revenue TEXT NOT NULL DEFAULT '0'"),
    ("calculations", "zus_deduction",
     "ALTER TABLE calculations ADD COLUMN zus_deduction TEXT NOT NULL DEFAULT '0'"),
]


def _apply_column_migrations(conn: sqlite3.Connection):
    """Add new columns to existing tables without touching data."""
    for table, column, sql in _COLUMN_MIGRATIONS:
        existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
        if column not in existing:
            conn.execute(sql)
    conn.commit()


class Database:
    def __init__(self, db_path: str = "income_tax.db"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._tx_owner: int | None = None
        self._write_lock = threading.RLock()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    @property
    def in_transaction(self) -> bool:
        """True only for the thread that opened the current transaction."""
        return self._tx_owner == threading.get_ident()

    def initialize(self):
        """Create tables and indexes if they don't exist, then add newer columns."""
        self.conn.executescript(SCHEMA)
        self.conn.commit()
        _apply_column_migrations(self.conn)

    @contextmanager
    def transaction(self):
        """Wrap multiple operations in a single atomic commit.

        Nested calls from the same thread join the outer transaction; only
        the outermost one commits or rolls back. Other threads wait on the
        write lock, so every write must go through here.
        """
        with self._write_lock:
            if self.in_transaction:
                yield
                return
            self._tx_owner = threading.get_ident()
            try:
                yield
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
            finally:
                self._tx_owner = None

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None


# Global database instance, configured at app startup
_db: Database | None = None


def _find_project_root() -> Path:
    """Walk up from this file to find the project root (where pyproject.toml lives)."""
    current = Path(__file__).resolve().parent
    for _ in range(10):
        if (current / "pyproject.toml").exists():
            return current
        current = current.parent
    return Path.cwd()


def get_db() -> Database:
    global _db
    if _db is None:
        default_path = _find_project_root() / "income_tax.db"
        default_path.parent.mkdir(parents=True, exist_ok=True)
        _db = Database(str(default_path))
        _db.initialize()
    return _db


def set_db_path(path: str):
    global _db
    if _db:
        _db.close()
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    _db = Database(str(p))
    _db.initialize()
