"""
Repository pattern for gateway state.

Persists the usage metrics snapshot, the circuit breaker state and the
append-only usage ledger in SQLite. Every sqlite3 failure surfaces as
PersistenceError so the gateway can contain it.
"""

import json
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from ai_budget_gateway.core.budget import UsageMetrics
from ai_budget_gateway.core.circuit_breaker import BreakerState, CircuitState
from ai_budget_gateway.core.errors import PersistenceError

from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageRecord

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS usage_metrics (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        payload TEXT NOT NULL,
        saved_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS circuit_state (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        state TEXT NOT NULL,
        last_transition_at TEXT NOT NULL,
        open_reason TEXT,
        cooldown_until TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_record (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        model TEXT NOT NULL,
        requested_model TEXT NOT NULL,
        prompt_units INTEGER NOT NULL,
        completion_units INTEGER NOT NULL,
        total_units INTEGER NOT NULL,
        cost TEXT NOT NULL,
        fallback_used INTEGER NOT NULL DEFAULT 0,
        usage_estimated INTEGER NOT NULL DEFAULT 0,
        fingerprint TEXT
    )
    """,
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the gateway tables if they don't exist.

    Args:
        db_path: Path to SQLite database file

    Raises:
        PersistenceError: If the schema cannot be created
    """
    try:
        conn = get_connection(db_path)
        try:
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()
        finally:
            conn.close()
    except sqlite3.Error as e:
        raise PersistenceError(f"Cannot initialize schema in {db_path}: {e}") from e


class SQLiteStateStore:
    """Persistence store for a single gateway process.

    Implements loadMetrics/saveMetrics, circuit state load/save and the
    usage ledger on top of one SQLite file.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, create_schema: bool = True):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
            create_schema: Create missing tables on first use
        """
        self.db_path = db_path
        if create_schema:
            initialize_schema(db_path)

    def _execute(self, operation: str, query: str, params=(), fetch: bool = False):
        try:
            conn = get_connection(self.db_path)
            try:
                cursor = conn.execute(query, params)
                rows = cursor.fetchall() if fetch else None
                conn.commit()
                return rows
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"{operation} failed: {e}") from e

    def load_metrics(self) -> Optional[UsageMetrics]:
        """Return the last saved metrics snapshot, or None if never saved."""
        rows = self._execute(
            "load_metrics", "SELECT payload FROM usage_metrics WHERE id = 1", fetch=True
        )
        if not rows:
            return None
        try:
            return UsageMetrics.from_dict(json.loads(rows[0]["payload"]))
        except (ValueError, KeyError, ArithmeticError) as e:
            raise PersistenceError(f"load_metrics failed: corrupt snapshot ({e})") from e

    def save_metrics(self, metrics: UsageMetrics) -> None:
        self._execute(
            "save_metrics",
            """
            INSERT INTO usage_metrics (id, payload, saved_at) VALUES (1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET payload = excluded.payload, saved_at = excluded.saved_at
            """,
            (json.dumps(metrics.to_dict()), datetime.now().isoformat())
        )

    def load_circuit_state(self) -> Optional[CircuitState]:
        rows = self._execute(
            "load_circuit_state",
            "SELECT state, last_transition_at, open_reason, cooldown_until FROM circuit_state WHERE id = 1",
            fetch=True
        )
        if not rows:
            return None
        row = rows[0]
        try:
            return CircuitState(
                state=BreakerState(row["state"]),
                last_transition_at=datetime.fromisoformat(row["last_transition_at"]),
                open_reason=row["open_reason"],
                cooldown_until=(
                    datetime.fromisoformat(row["cooldown_until"]) if row["cooldown_until"] else None
                ),
            )
        except ValueError as e:
            raise PersistenceError(f"load_circuit_state failed: corrupt state ({e})") from e

    def save_circuit_state(self, state: CircuitState) -> None:
        self._execute(
            "save_circuit_state",
            """
            INSERT INTO circuit_state (id, state, last_transition_at, open_reason, cooldown_until)
            VALUES (1, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                state = excluded.state,
                last_transition_at = excluded.last_transition_at,
                open_reason = excluded.open_reason,
                cooldown_until = excluded.cooldown_until
            """,
            (
                state.state.value,
                state.last_transition_at.isoformat(),
                state.open_reason,
                state.cooldown_until.isoformat() if state.cooldown_until else None,
            )
        )

    def append_usage_record(self, record: UsageRecord) -> None:
        """Append a record to the ledger. Records are never updated or deleted."""
        self._execute(
            "append_usage_record",
            """
            INSERT INTO usage_record
            (timestamp, model, requested_model, prompt_units, completion_units,
             total_units, cost, fallback_used, usage_estimated, fingerprint)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.timestamp.isoformat(),
                record.model,
                record.requested_model,
                record.prompt_units,
                record.completion_units,
                record.total_units,
                str(record.cost),
                int(record.fallback_used),
                int(record.usage_estimated),
                record.fingerprint
            )
        )

    def fetch_recent_usage_records(
        self,
        model: Optional[str] = None,
        limit: int = 100
    ) -> List[UsageRecord]:
        """Fetch ledger rows newest first, optionally filtered by actual model."""
        query = """
            SELECT timestamp, model, requested_model, prompt_units, completion_units,
                   cost, fallback_used, usage_estimated, fingerprint
            FROM usage_record
        """
        params = []
        if model:
            query += " WHERE model = ?"
            params.append(model)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        rows = self._execute("fetch_recent_usage_records", query, params, fetch=True)
        return [
            UsageRecord(
                timestamp=datetime.fromisoformat(row["timestamp"]),
                model=row["model"],
                requested_model=row["requested_model"],
                prompt_units=row["prompt_units"],
                completion_units=row["completion_units"],
                cost=Decimal(row["cost"]),
                fallback_used=bool(row["fallback_used"]),
                usage_estimated=bool(row["usage_estimated"]),
                fingerprint=row["fingerprint"]
            )
            for row in rows
        ]
