"""
Spend cap evaluation.

Computes month-to-date totals per scope and flags soft/hard cap breaches.

Evaluation Order:
1. Provider scopes in declaration order (openai, anthropic, vertex)
2. Global scope
Within each scope the soft cap is checked before the hard cap.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Tuple

from .rollups import as_utc, month_to_date
from ai_spend_guard.storage.models import SpendRecord


class CapScope(Enum):
    """Unit of cap evaluation: one provider or the global aggregate."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    VERTEX = "vertex"
    GLOBAL = "global"


class CapLevel(Enum):
    """Cap severity."""
    SOFT = "soft"
    HARD = "hard"


@dataclass(frozen=True)
class CapConfig:
    """Soft and hard spend caps per provider and globally (USD).

    A threshold of zero means the cap is not configured. Hard caps are
    expected to be >= soft caps but this is not enforced.
    """
    openai_soft: Decimal = Decimal("0")
    openai_hard: Decimal = Decimal("0")
    anthropic_soft: Decimal = Decimal("0")
    anthropic_hard: Decimal = Decimal("0")
    vertex_soft: Decimal = Decimal("0")
    vertex_hard: Decimal = Decimal("0")
    global_soft: Decimal = Decimal("0")
    global_hard: Decimal = Decimal("0")

    def __post_init__(self):
        """Validate caps are non-negative."""
        for scope in CapScope:
            soft, hard = self.thresholds(scope)
            if soft < 0:
                raise ValueError(f"{scope.value}_soft cap cannot be negative")
            if hard < 0:
                raise ValueError(f"{scope.value}_hard cap cannot be negative")

    def thresholds(self, scope: CapScope) -> Tuple[Decimal, Decimal]:
        """Return the (soft, hard) pair for a scope."""
        return (
            getattr(self, f"{scope.value}_soft"),
            getattr(self, f"{scope.value}_hard"),
        )


@dataclass(frozen=True)
class CapBreach:
    """A scope whose month-to-date total reached a cap."""
    scope: CapScope
    level: CapLevel
    threshold: Decimal
    total: Decimal
    triggered_at: datetime


@dataclass(frozen=True)
class CapEvaluation:
    """Totals for every scope and the breaches found in them."""
    totals: Dict[CapScope, Decimal]
    breaches: List[CapBreach]


def evaluate_caps(
    records: Iterable[SpendRecord],
    caps: CapConfig,
    now: datetime,
) -> CapEvaluation:
    """Evaluate caps against month-to-date spend.

    A scope breaches a level when its total is greater than or equal to the
    threshold. Zero thresholds are never breached. Soft and hard caps are
    checked independently, so both can be reported for one scope.

    Args:
        records: Spend records (any date range)
        caps: Validated cap configuration
        now: Evaluation time; defines the current month

    Returns:
        CapEvaluation with totals for all four scopes
    """
    now = as_utc(now)
    totals: Dict[CapScope, Decimal] = {scope: Decimal("0") for scope in CapScope}
    for record in month_to_date(records, now):
        totals[CapScope(record.provider.value)] += record.cost_usd
        totals[CapScope.GLOBAL] += record.cost_usd

    breaches = []
    for scope in CapScope:
        soft, hard = caps.thresholds(scope)
        for level, threshold in ((CapLevel.SOFT, soft), (CapLevel.HARD, hard)):
            if not threshold:
                continue
            if totals[scope] >= threshold:
                breaches.append(CapBreach(
                    scope=scope,
                    level=level,
                    threshold=threshold,
                    total=totals[scope],
                    triggered_at=now,
                ))

    return CapEvaluation(totals=totals, breaches=breaches)


def ledger_key(scope: CapScope, level: CapLevel) -> str:
    """Debounce ledger key for a (scope, level) pair."""
    return f"{scope.value}:{level.value}"


def eligible_breaches(
    breaches: Iterable[CapBreach],
    ledger: Mapping[str, datetime],
    now: datetime,
    window: timedelta,
) -> List[CapBreach]:
    """Filter breaches down to those allowed to notify now.

    A breach with no ledger entry is eligible; otherwise it becomes eligible
    again once ``window`` has elapsed since the last notification.
    """
    now = as_utc(now)
    eligible = []
    for breach in breaches:
        last_sent = ledger.get(ledger_key(breach.scope, breach.level))
        if last_sent is None or now - as_utc(last_sent) >= window:
            eligible.append(breach)
    return eligible


def advance_ledger(
    ledger: Mapping[str, datetime],
    breaches: Iterable[CapBreach],
    now: datetime,
) -> Dict[str, datetime]:
    """Return a copy of the ledger stamped with ``now`` for each breach."""
    updated = dict(ledger)
    for breach in breaches:
        updated[ledger_key(breach.scope, breach.level)] = as_utc(now)
    return updated
