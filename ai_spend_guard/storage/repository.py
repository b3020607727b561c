"""
Repository pattern for data access.

Persists rollup state per tenant, the spend audit history and the
ingestion run log.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import Provider, SpendRecord
from ai_spend_guard.core.state import RollupState


@dataclass
class SpendSummaryDay:
    """Spend for one day across providers."""
    day: str
    total_usd: Decimal
    provider_totals: Dict[str, Decimal]


@dataclass
class SpendSummary:
    """Spend over a date range from the audit history."""
    from_day: str
    to_day: str
    total_usd: Decimal
    provider_totals: Dict[str, Decimal]
    days: List[SpendSummaryDay] = field(default_factory=list)


@dataclass(frozen=True)
class IngestionRun:
    """One ingestion cycle as recorded in the run log."""
    started_at: datetime
    completed_at: datetime
    status: str  # "success" or "error"
    records_ingested: int
    error: Optional[str] = None


def _empty_provider_totals() -> Dict[str, Decimal]:
    return {provider.value: Decimal("0.00") for provider in Provider}


def _to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _to_usd(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


class StateRepository:
    """Stores one serialized RollupState per tenant.

    Each save is a single upsert committed in its own transaction, so a
    reader sees either the previous state or the new one.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def load_state(self, tenant: str) -> Optional[RollupState]:
        """Load a tenant's state, or None if it was never saved."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT payload FROM rollup_state WHERE tenant = ?", (tenant,)
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return RollupState.from_dict(json.loads(row[0]))
        finally:
            conn.close()

    def save_state(self, tenant: str, state: RollupState) -> None:
        """Persist a tenant's state atomically.

        Raises:
            sqlite3.Error: If the write fails; nothing is persisted then
        """
        payload = json.dumps(state.to_dict())
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO rollup_state (tenant, payload, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(tenant) DO UPDATE SET
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
            """, (tenant, payload, datetime.now(timezone.utc).isoformat()))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the state, spend history and run log tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS rollup_state (
                tenant TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS spend_snapshot (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                provider TEXT NOT NULL,
                model TEXT NOT NULL DEFAULT '',
                day TEXT NOT NULL,
                source TEXT NOT NULL,
                cost_usd_cents INTEGER NOT NULL,
                input_tokens INTEGER,
                output_tokens INTEGER,
                captured_at TEXT NOT NULL,
                UNIQUE (provider, model, day, source)
            );

            CREATE INDEX IF NOT EXISTS idx_spend_snapshot_day ON spend_snapshot (day);

            CREATE TABLE IF NOT EXISTS ingestion_run (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                started_at TEXT NOT NULL,
                completed_at TEXT NOT NULL,
                status TEXT NOT NULL,
                records_ingested INTEGER NOT NULL,
                error TEXT
            );
        """)
        conn.commit()
    finally:
        conn.close()


def record_spend(
    records: Iterable[SpendRecord],
    captured_at: datetime,
    db_path: str = DEFAULT_DB_PATH,
) -> int:
    """Upsert records into the spend history in one transaction.

    Records are keyed by (provider, model, day, source); a later capture
    replaces the stored cost and token counts.

    Args:
        records: Records to store
        captured_at: When the records were fetched
        db_path: Path to SQLite database file

    Returns:
        Number of records written
    """
    records = list(records)
    if not records:
        return 0

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN TRANSACTION")
        for record in records:
            conn.execute("""
                INSERT INTO spend_snapshot
                (provider, model, day, source, cost_usd_cents,
                 input_tokens, output_tokens, captured_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider, model, day, source) DO UPDATE SET
                    cost_usd_cents = excluded.cost_usd_cents,
                    input_tokens = excluded.input_tokens,
                    output_tokens = excluded.output_tokens,
                    captured_at = excluded.captured_at
            """, (
                record.provider.value,
                record.model or '',
                record.day,
                record.source.value,
                _to_cents(record.cost_usd),
                record.input_tokens,
                record.output_tokens,
                captured_at.isoformat(),
            ))
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    return len(records)


def fetch_spend_summary(
    from_day: str,
    to_day: str,
    db_path: str = DEFAULT_DB_PATH,
) -> SpendSummary:
    """Summarize stored spend per day and provider over an inclusive range.

    Args:
        from_day: First day (YYYY-MM-DD)
        to_day: Last day (YYYY-MM-DD)
        db_path: Path to SQLite database file

    Returns:
        SpendSummary with days in ascending order
    """
    conn = get_connection(db_path)
    try:
        cursor = conn.execute("""
            SELECT day, provider, SUM(cost_usd_cents) AS total_cents
            FROM spend_snapshot
            WHERE day BETWEEN ? AND ?
            GROUP BY day, provider
            ORDER BY day ASC, provider ASC
        """, (from_day, to_day))
        rows = cursor.fetchall()
    finally:
        conn.close()

    known = {provider.value for provider in Provider}
    provider_totals = _empty_provider_totals()
    days: Dict[str, SpendSummaryDay] = {}
    total_cents = 0

    for day, provider, cents in rows:
        if provider not in known:
            continue
        usd = _to_usd(cents)
        total_cents += cents
        summary_day = days.setdefault(day, SpendSummaryDay(
            day=day,
            total_usd=Decimal("0.00"),
            provider_totals=_empty_provider_totals(),
        ))
        summary_day.total_usd += usd
        summary_day.provider_totals[provider] += usd
        provider_totals[provider] += usd

    return SpendSummary(
        from_day=from_day,
        to_day=to_day,
        total_usd=_to_usd(total_cents),
        provider_totals=provider_totals,
        days=[days[day] for day in sorted(days)],
    )


def record_ingestion_run(run: IngestionRun, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append an ingestion cycle to the run log."""
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO ingestion_run
            (started_at, completed_at, status, records_ingested, error)
            VALUES (?, ?, ?, ?, ?)
        """, (
            run.started_at.isoformat(),
            run.completed_at.isoformat(),
            run.status,
            run.records_ingested,
            run.error,
        ))
        conn.commit()
    finally:
        conn.close()


def fetch_ingestion_runs(limit: int = 20, db_path: str = DEFAULT_DB_PATH) -> List[IngestionRun]:
    """Most recent ingestion runs, newest first."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute("""
            SELECT started_at, completed_at, status, records_ingested, error
            FROM ingestion_run
            ORDER BY id DESC LIMIT ?
        """, (limit,))
        return [
            IngestionRun(
                started_at=datetime.fromisoformat(row[0]),
                completed_at=datetime.fromisoformat(row[1]),
                status=row[2],
                records_ingested=row[3],
                error=row[4],
            )
            for row in cursor.fetchall()
        ]
    finally:
        conn.close()
