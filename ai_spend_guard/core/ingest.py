"""
Scheduled ingestion cycle.

Pulls records from every provider fetcher, records them in the spend
history and hands them to the rollup actor. A failing provider never stops
the others; its error is carried into the rollup state as ``last_error``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import structlog

from .actor import RollupActor
from .rollups import utc_date
from .state import RollupState
from ai_spend_guard.config.loader import MonitorConfig
from ai_spend_guard.storage.models import SpendRecord
from ai_spend_guard.storage.repository import IngestionRun, record_ingestion_run, record_spend

logger = structlog.get_logger(__name__)

# Called with the inclusive (from_day, to_day) window.
ProviderFetcher = Callable[[str, str], Iterable[SpendRecord]]


@dataclass
class IngestionReport:
    """Outcome of one ingestion cycle."""
    from_day: str
    to_day: str
    records_ingested: int
    state: RollupState
    failures: Dict[str, str] = field(default_factory=dict)


def fetch_window(now: datetime, lookback_hours: int) -> Tuple[str, str]:
    """Inclusive (from_day, to_day) covering the lookback period."""
    return (
        utc_date(now - timedelta(hours=lookback_hours)).isoformat(),
        utc_date(now).isoformat(),
    )


def run_ingestion_cycle(
    actor: RollupActor,
    fetchers: Mapping[str, ProviderFetcher],
    config: MonitorConfig,
    now: datetime,
    db_path: Optional[str] = None,
    replace: bool = False,
) -> IngestionReport:
    """Run one fetch → record → rollup cycle.

    Args:
        actor: Rollup actor for the tenant
        fetchers: Provider name to fetch function
        config: Validated monitor configuration
        now: Scheduled time of this cycle
        db_path: Database for spend history and run log; skipped when None
        replace: Replace the actor's records instead of merging

    Returns:
        IngestionReport with the persisted state

    Raises:
        sqlite3.Error: If the rollup state cannot be persisted
    """
    started_at = datetime.now(timezone.utc)
    from_day, to_day = fetch_window(now, config.cron_lookback_hours)

    records: List[SpendRecord] = []
    failures: Dict[str, str] = {}
    for name, fetcher in fetchers.items():
        try:
            fetched = list(fetcher(from_day, to_day))
        except Exception as e:
            logger.error("provider_fetch_failed", provider=name, error=str(e))
            failures[name] = str(e)
            continue
        logger.info("provider_fetch_completed", provider=name, records=len(fetched))
        records.extend(fetched)

    last_error = "; ".join(f"{name}: {message}" for name, message in failures.items()) or None

    try:
        if db_path is not None:
            record_spend(records, now, db_path)
        state = actor.update(
            records,
            config.caps,
            now,
            channels=config.channels,
            replace=replace,
            last_error=last_error,
        )
    except Exception as e:
        logger.error("ingestion_cycle_failed", error=str(e))
        if db_path is not None:
            record_ingestion_run(IngestionRun(
                started_at=started_at,
                completed_at=datetime.now(timezone.utc),
                status="error",
                records_ingested=0,
                error=str(e),
            ), db_path)
        raise

    if db_path is not None:
        record_ingestion_run(IngestionRun(
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            status="error" if failures else "success",
            records_ingested=len(records),
            error=last_error,
        ), db_path)

    logger.info(
        "ingestion_cycle_completed",
        from_day=from_day,
        to_day=to_day,
        records=len(records),
        failed_providers=sorted(failures),
    )
    return IngestionReport(
        from_day=from_day,
        to_day=to_day,
        records_ingested=len(records),
        state=state,
        failures=failures,
    )
