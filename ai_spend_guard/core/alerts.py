"""
Cap breach alerting.

Debounces breaches per (scope, level) and delivers one combined
notification per configured webhook channel.

Delivery is best-effort: a failing channel is logged and reported as a
failed ChannelResult, and the debounce ledger advances for every eligible
breach regardless of delivery outcome.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx
import structlog

from .caps import CapBreach, CapLevel, CapScope, advance_ledger, eligible_breaches
from .rollups import as_utc

logger = structlog.get_logger(__name__)

DEFAULT_DEBOUNCE_WINDOW = timedelta(hours=1)
DEFAULT_TIMEOUT_SECONDS = 10.0

SLACK_CHANNEL = "slack"
EMAIL_CHANNEL = "email"
HARD_CAP_CHANNEL = "hard_cap"

EMAIL_SUBJECT = "[AI Spend Monitor] Cap breach detected"
HARD_CAP_EVENT = "ai_spend_hard_cap"


@dataclass(frozen=True)
class AlertChannels:
    """Outbound webhook URLs for alert delivery.

    The hard-cap webhook only receives hard-level breaches, as a structured
    event, in addition to the primary channels.
    """
    slack_webhook: Optional[str] = None
    email_webhook: Optional[str] = None
    hard_cap_webhook: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        """True if at least one webhook is set."""
        return bool(self.slack_webhook or self.email_webhook or self.hard_cap_webhook)


@dataclass(frozen=True)
class ChannelResult:
    """Delivery outcome for one channel."""
    channel: str
    ok: bool
    message: Optional[str] = None


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one dispatch: per-channel results and the new ledger."""
    results: List[ChannelResult]
    ledger: Dict[str, datetime] = field(default_factory=dict)


def format_breach_line(breach: CapBreach) -> str:
    """One-line description of a breach."""
    level = "Soft cap" if breach.level == CapLevel.SOFT else "Hard cap"
    return (
        f"{level} breached for {breach.scope.value}: "
        f"${breach.total:,.2f} (threshold ${breach.threshold:,.2f})"
    )


def build_alert_message(breaches: List[CapBreach], now: datetime) -> str:
    """Plain-text alert covering all breaches."""
    plural = "" if len(breaches) == 1 else "es"
    header = f"AI spend monitor detected {len(breaches)} cap breach{plural} at {now.isoformat()}"
    lines = [f"• {format_breach_line(breach)}" for breach in breaches]
    return "\n".join([header] + lines)


def build_alert_html(breaches: List[CapBreach], now: datetime) -> str:
    """HTML alert body for the email relay."""
    plural = "" if len(breaches) == 1 else "es"
    items = "".join(
        f"<li><strong>{breach.scope.value}</strong> {breach.level.value.upper()} &mdash; "
        f"${breach.total:,.2f} (threshold ${breach.threshold:,.2f})</li>"
        for breach in breaches
    )
    return (
        f"<p>AI spend monitor detected {len(breaches)} cap breach{plural} "
        f"at {now.isoformat()}.</p><ul>{items}</ul>"
    )


def _breach_payload(breach: CapBreach) -> Dict[str, Any]:
    return {
        "scope": breach.scope.value,
        "level": breach.level.value,
        "threshold": float(breach.threshold),
        "total": float(breach.total),
        "triggeredAt": breach.triggered_at.isoformat(),
    }


def _post_json(client: httpx.Client, channel: str, url: str, body: Dict[str, Any]) -> ChannelResult:
    """POST a JSON body, converting any failure into a failed result."""
    try:
        response = client.post(url, json=body)
    except httpx.HTTPError as e:
        logger.error("alert_delivery_failed", channel=channel, error=str(e))
        return ChannelResult(channel=channel, ok=False, message=str(e))

    if not response.is_success:
        message = f"HTTP {response.status_code}"
        logger.error("alert_delivery_failed", channel=channel, error=message)
        return ChannelResult(channel=channel, ok=False, message=message)

    return ChannelResult(channel=channel, ok=True)


def _deliver(
    client: httpx.Client,
    channels: AlertChannels,
    breaches: List[CapBreach],
    totals: Mapping[CapScope, Decimal],
    now: datetime,
) -> List[ChannelResult]:
    message = build_alert_message(breaches, now)
    results = []

    if channels.slack_webhook:
        body = {
            "text": message,
            "blocks": [
                {"type": "section", "text": {"type": "mrkdwn", "text": f"*AI spend monitor alert*\n{message}"}},
                {
                    "type": "context",
                    "elements": [
                        {"type": "mrkdwn", "text": format_breach_line(breach)} for breach in breaches
                    ],
                },
            ],
        }
        results.append(_post_json(client, SLACK_CHANNEL, channels.slack_webhook, body))

    if channels.email_webhook:
        body = {
            "subject": EMAIL_SUBJECT,
            "text": message,
            "html": build_alert_html(breaches, now),
        }
        results.append(_post_json(client, EMAIL_CHANNEL, channels.email_webhook, body))

    hard_breaches = [breach for breach in breaches if breach.level == CapLevel.HARD]
    if hard_breaches and channels.hard_cap_webhook:
        body = {
            "event": HARD_CAP_EVENT,
            "breaches": [_breach_payload(breach) for breach in hard_breaches],
            "totals": {scope.value: float(total) for scope, total in totals.items()},
            "triggeredAt": now.isoformat(),
        }
        results.append(_post_json(client, HARD_CAP_CHANNEL, channels.hard_cap_webhook, body))

    return results


def dispatch_cap_alerts(
    breaches: Iterable[CapBreach],
    ledger: Mapping[str, datetime],
    channels: AlertChannels,
    now: datetime,
    debounce_window: timedelta = DEFAULT_DEBOUNCE_WINDOW,
    totals: Optional[Mapping[CapScope, Decimal]] = None,
    client: Optional[httpx.Client] = None,
) -> DispatchResult:
    """Send debounced breach notifications.

    Args:
        breaches: Breaches from the latest cap evaluation
        ledger: Last notification time per "scope:level" key
        channels: Webhooks to notify
        now: Caller-supplied current time
        debounce_window: Minimum time between notifications for one key
        totals: Current scope totals, included in hard-cap events
        client: HTTP client to use; a short-lived one is created if omitted

    Returns:
        DispatchResult with one ChannelResult per channel contacted and the
        advanced ledger. The input ledger is never modified.
    """
    breaches = list(breaches)
    now = as_utc(now)
    to_notify = eligible_breaches(breaches, ledger, now, debounce_window)

    if len(to_notify) < len(breaches):
        logger.info(
            "alerts_debounced",
            suppressed=len(breaches) - len(to_notify),
            eligible=len(to_notify),
        )

    if not to_notify:
        return DispatchResult(results=[], ledger=dict(ledger))

    totals = totals or {}
    if client is not None:
        results = _deliver(client, channels, to_notify, totals, now)
    else:
        with httpx.Client(timeout=DEFAULT_TIMEOUT_SECONDS) as owned_client:
            results = _deliver(owned_client, channels, to_notify, totals, now)

    logger.info(
        "alerts_dispatched",
        breaches=[f"{b.scope.value}:{b.level.value}" for b in to_notify],
        channels=[result.channel for result in results],
        failed=[result.channel for result in results if not result.ok],
    )

    return DispatchResult(results=results, ledger=advance_ledger(ledger, to_notify, now))
