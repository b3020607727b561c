"""
Data models for storage layer.

Defines the normalized spend record shared by every billing source.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional


class Provider(Enum):
    """AI providers whose spend is tracked."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    VERTEX = "vertex"


class SpendSource(Enum):
    """Upstream endpoint that produced a spend record."""
    USAGE_API = "usage_api"
    COST_API = "cost_api"
    BQ_EXPORT = "bq_export"
    BUDGETS_API = "budgets_api"


CURRENCY = "USD"


@dataclass(frozen=True)
class SpendRecord:
    """One provider/model/day cost observation.

    Records are identified by (provider, day, model). A newer record with the
    same key replaces the older one wholesale; records are never edited.
    """
    provider: Provider
    day: str  # YYYY-MM-DD, UTC
    cost_usd: Decimal
    source: SpendSource
    model: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    currency: str = CURRENCY

    def __post_init__(self):
        """Validate record fields."""
        try:
            valid_day = date.fromisoformat(self.day).isoformat() == self.day
        except (TypeError, ValueError):
            valid_day = False
        if not valid_day:
            raise ValueError(f"day must be an ISO date (YYYY-MM-DD), got {self.day!r}")
        if isinstance(self.cost_usd, bool) or not isinstance(self.cost_usd, (Decimal, int, float)):
            raise ValueError(f"cost_usd must be a number, got {self.cost_usd!r}")
        if not isinstance(self.cost_usd, Decimal):
            object.__setattr__(self, "cost_usd", Decimal(str(self.cost_usd)))
        if not self.cost_usd.is_finite():
            raise ValueError("cost_usd must be finite")
        if self.cost_usd < 0:
            raise ValueError("cost_usd cannot be negative")
        if self.input_tokens is not None and self.input_tokens < 0:
            raise ValueError("input_tokens cannot be negative")
        if self.output_tokens is not None and self.output_tokens < 0:
            raise ValueError("output_tokens cannot be negative")
        if self.currency != CURRENCY:
            raise ValueError(f"Unsupported currency: {self.currency}")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dict (cost as a decimal string)."""
        data: Dict[str, Any] = {
            "provider": self.provider.value,
            "day": self.day,
            "cost_usd": str(self.cost_usd),
            "currency": self.currency,
            "source": self.source.value,
        }
        if self.model is not None:
            data["model"] = self.model
        if self.input_tokens is not None:
            data["input_tokens"] = self.input_tokens
        if self.output_tokens is not None:
            data["output_tokens"] = self.output_tokens
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpendRecord":
        """Build a record from a dict such as one produced by ``to_dict``.

        Raises:
            ValueError: If a field is missing or invalid
        """
        for required in ("provider", "day", "cost_usd", "source"):
            if required not in data:
                raise ValueError(f"Spend record missing required field '{required}'")
        try:
            cost = Decimal(str(data["cost_usd"]))
        except InvalidOperation:
            raise ValueError(f"Invalid cost_usd: {data['cost_usd']!r}")
        return cls(
            provider=Provider(data["provider"]),
            day=data["day"],
            cost_usd=cost,
            source=SpendSource(data["source"]),
            model=data.get("model"),
            input_tokens=data.get("input_tokens"),
            output_tokens=data.get("output_tokens"),
            currency=data.get("currency", CURRENCY),
        )
