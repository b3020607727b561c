"""
Rollup actor.

Single owner of a tenant's spend state. Every update and query runs on one
worker thread in arrival order, so merge, evaluate, dispatch and persist
never interleave between requests.

Update Order:
1. Merge incoming records (or replace the series)
2. Evaluate caps against month-to-date spend
3. Dispatch debounced alerts, if channels are given
4. Persist the new state, then publish it to readers
"""

import queue
import threading
from concurrent.futures import Future
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, List, Optional, Tuple

import httpx
import structlog

from .alerts import DEFAULT_DEBOUNCE_WINDOW, AlertChannels, dispatch_cap_alerts
from .caps import CapConfig, evaluate_caps
from .rollups import (
    DEFAULT_RETENTION_DAYS,
    GroupBy,
    SpendBucket,
    aggregate,
    as_utc,
    filter_by_range,
    merge_records,
)
from .state import RollupState
from ai_spend_guard.storage.models import SpendRecord
from ai_spend_guard.storage.repository import StateRepository

logger = structlog.get_logger(__name__)

DEFAULT_TENANT = "global"

_Request = Tuple[Callable[..., Any], Tuple[Any, ...], Future]


class RollupActor:
    """Serialized state holder for one tenant.

    State is loaded from the repository at construction. Updates publish
    a new immutable RollupState only after it has been persisted, so
    ``snapshot()`` never observes a partially applied update.
    """

    def __init__(
        self,
        repository: StateRepository,
        tenant: str = DEFAULT_TENANT,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        debounce_window: timedelta = DEFAULT_DEBOUNCE_WINDOW,
        http_client: Optional[httpx.Client] = None,
    ):
        """Load the tenant's state and start the worker.

        Args:
            repository: Where state is loaded from and saved to
            tenant: Logical instance identifier
            retention_days: Days of history kept by merges
            debounce_window: Minimum interval between alerts for one cap
            http_client: Client for webhook delivery (optional)
        """
        self.tenant = tenant
        self.retention_days = retention_days
        self.debounce_window = debounce_window
        self._repository = repository
        self._http_client = http_client
        self._state = repository.load_state(tenant) or RollupState()

        self._requests: "queue.Queue[Optional[_Request]]" = queue.Queue()
        self._closed = False
        self._close_lock = threading.Lock()
        self._worker = threading.Thread(
            target=self._run, name=f"rollup-actor-{tenant}", daemon=True
        )
        self._worker.start()

    def __enter__(self) -> "RollupActor":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def update(
        self,
        records: Iterable[SpendRecord],
        caps: CapConfig,
        now: datetime,
        channels: Optional[AlertChannels] = None,
        replace: bool = False,
        last_error: Optional[str] = None,
    ) -> RollupState:
        """Merge a batch of records, evaluate caps, alert and persist.

        Args:
            records: Incoming records for this cycle
            caps: Validated cap configuration
            now: Caller-supplied current time
            channels: Alert channels; no dispatch happens when None
            replace: Discard existing records before merging
            last_error: Failure summary for this cycle (None clears it)

        Returns:
            The persisted RollupState

        Raises:
            sqlite3.Error: If persisting fails; the update is not applied
        """
        return self._submit(
            self._apply_update, list(records), caps, now, channels, replace, last_error
        )

    def query(
        self,
        from_day: Optional[str] = None,
        to_day: Optional[str] = None,
        group_by: Optional[GroupBy] = None,
    ) -> List[SpendBucket]:
        """Aggregated view of the held records. Never mutates state."""
        return self._submit(self._apply_query, from_day, to_day, group_by)

    def snapshot(self) -> RollupState:
        """The most recently persisted state."""
        return self._state

    def close(self) -> None:
        """Stop accepting requests and wait for queued ones to finish."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
            self._requests.put(None)
        self._worker.join()

    def _submit(self, fn: Callable[..., Any], *args: Any) -> Any:
        future: Future = Future()
        with self._close_lock:
            if self._closed:
                raise RuntimeError(f"Rollup actor for tenant '{self.tenant}' is closed")
            self._requests.put((fn, args, future))
        return future.result()

    def _run(self) -> None:
        while True:
            request = self._requests.get()
            if request is None:
                break
            fn, args, future = request
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = fn(*args)
            except Exception as e:
                future.set_exception(e)
            else:
                future.set_result(result)

    def _apply_update(
        self,
        records: List[SpendRecord],
        caps: CapConfig,
        now: datetime,
        channels: Optional[AlertChannels],
        replace: bool,
        last_error: Optional[str],
    ) -> RollupState:
        current = self._state
        now = as_utc(now)

        if current.last_run is not None and now < current.last_run:
            logger.warning(
                "out_of_order_update",
                tenant=self.tenant,
                now=now.isoformat(),
                last_run=current.last_run.isoformat(),
            )

        existing = () if replace else current.records
        merged = merge_records(existing, records, now, self.retention_days)
        evaluation = evaluate_caps(merged, caps, now)

        ledger = current.ledger
        last_dispatch = current.last_dispatch
        if channels is not None:
            dispatch = dispatch_cap_alerts(
                evaluation.breaches,
                ledger,
                channels,
                now,
                debounce_window=self.debounce_window,
                totals=evaluation.totals,
                client=self._http_client,
            )
            ledger = dispatch.ledger
            last_dispatch = tuple(dispatch.results)

        new_state = RollupState(
            records=tuple(merged),
            ledger=ledger,
            last_run=now,
            last_error=last_error,
            last_evaluation=evaluation,
            last_dispatch=last_dispatch,
        )
        self._repository.save_state(self.tenant, new_state)
        self._state = new_state

        logger.info(
            "rollup_update_applied",
            tenant=self.tenant,
            incoming=len(records),
            records=len(merged),
            replace=replace,
            breaches=len(evaluation.breaches),
        )
        return new_state

    def _apply_query(
        self,
        from_day: Optional[str],
        to_day: Optional[str],
        group_by: Optional[GroupBy],
    ) -> List[SpendBucket]:
        return aggregate(filter_by_range(self._state.records, from_day, to_day), group_by)
