"""
Rollup state held by the rollup actor.

One RollupState per tenant is persisted as a single JSON document.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from .alerts import ChannelResult
from .caps import CapBreach, CapEvaluation, CapLevel, CapScope
from .rollups import as_utc
from ai_spend_guard.storage.models import SpendRecord


@dataclass(frozen=True)
class RollupState:
    """Everything the actor owns: records, debounce ledger and last results."""
    records: Tuple[SpendRecord, ...] = ()
    ledger: Dict[str, datetime] = field(default_factory=dict)
    last_run: Optional[datetime] = None
    last_error: Optional[str] = None
    last_evaluation: Optional[CapEvaluation] = None
    last_dispatch: Tuple[ChannelResult, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "records": [record.to_dict() for record in self.records],
            "ledger": {key: sent.isoformat() for key, sent in self.ledger.items()},
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_error": self.last_error,
            "last_evaluation": _evaluation_to_dict(self.last_evaluation),
            "last_dispatch": [
                {"channel": r.channel, "ok": r.ok, "message": r.message}
                for r in self.last_dispatch
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollupState":
        """Rebuild a state from ``to_dict`` output."""
        last_run = data.get("last_run")
        return cls(
            records=tuple(SpendRecord.from_dict(r) for r in data.get("records", [])),
            ledger={
                key: as_utc(datetime.fromisoformat(sent))
                for key, sent in data.get("ledger", {}).items()
            },
            last_run=as_utc(datetime.fromisoformat(last_run)) if last_run else None,
            last_error=data.get("last_error"),
            last_evaluation=_evaluation_from_dict(data.get("last_evaluation")),
            last_dispatch=tuple(
                ChannelResult(channel=r["channel"], ok=r["ok"], message=r.get("message"))
                for r in data.get("last_dispatch", [])
            ),
        )


def _evaluation_to_dict(evaluation: Optional[CapEvaluation]) -> Optional[Dict[str, Any]]:
    if evaluation is None:
        return None
    return {
        "totals": {scope.value: str(total) for scope, total in evaluation.totals.items()},
        "breaches": [
            {
                "scope": breach.scope.value,
                "level": breach.level.value,
                "threshold": str(breach.threshold),
                "total": str(breach.total),
                "triggered_at": breach.triggered_at.isoformat(),
            }
            for breach in evaluation.breaches
        ],
    }


def _evaluation_from_dict(data: Optional[Dict[str, Any]]) -> Optional[CapEvaluation]:
    if data is None:
        return None
    return CapEvaluation(
        totals={CapScope(scope): Decimal(total) for scope, total in data["totals"].items()},
        breaches=[
            CapBreach(
                scope=CapScope(b["scope"]),
                level=CapLevel(b["level"]),
                threshold=Decimal(b["threshold"]),
                total=Decimal(b["total"]),
                triggered_at=as_utc(datetime.fromisoformat(b["triggered_at"])),
            )
            for b in data["breaches"]
        ],
    )
