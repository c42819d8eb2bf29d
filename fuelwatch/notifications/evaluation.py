"""
Alert decision logic.

Pure functions over a rule's trigger state and the current cheapest in-radius
price. Nothing here touches the database or the network; the pass in
``alert_scheduler`` applies the decision.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Optional

NOTIFICATION_TITLE = "Fuel Price Drop Alert!"


class Decision(str, Enum):
    BASELINE = "baseline"  # first observation, nothing to compare against yet
    NO_CHANGE = "no_change"
    NOTIFY = "notify"
    SUPPRESS = "suppress"  # qualifying drop, but a window is full


@dataclass(frozen=True)
class Evaluation:
    decision: Decision
    current_price: int
    reference_price: Optional[int]
    drop: int
    window: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class AlertNotification:
    title: str
    body: str
    data: Dict[str, Any]


def reference_price(rule) -> Optional[int]:
    if rule.last_notified_price is not None:
        return rule.last_notified_price
    return rule.baseline_price


def _parse_stamp(value: str) -> Optional[datetime]:
    try:
        dt = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def trim_window(stamps: Iterable[str] | None, now: datetime, window_hours: int) -> list[str]:
    """Keep only notification timestamps newer than ``now - window_hours``."""
    cutoff = now - timedelta(hours=window_hours)
    kept = []
    for s in stamps or []:
        dt = _parse_stamp(s)
        if dt is not None and dt > cutoff:
            kept.append(dt.isoformat())
    return kept


def evaluate_rule(
    rule,
    current_price: int,
    now: datetime,
    *,
    max_per_window: int = 2,
    window_hours: int = 24,
    user_recent: int = 0,
    max_per_user: int = 0,
) -> Evaluation:
    """
    ``user_recent`` is how many in-window notifications the rule's owner has
    across all their rules. ``max_per_user`` of 0 means no per-user cap.
    """
    window = trim_window(rule.recent_notifications, now, window_hours)
    ref = reference_price(rule)
    if ref is None:
        return Evaluation(Decision.BASELINE, current_price, None, 0, window)

    drop = ref - current_price
    repeated = current_price in (rule.last_notified_price, rule.last_suppressed_price)
    if drop < rule.threshold_ppl or repeated:
        return Evaluation(Decision.NO_CHANGE, current_price, ref, drop, window)

    if len(window) >= max_per_window or (max_per_user and user_recent >= max_per_user):
        return Evaluation(Decision.SUPPRESS, current_price, ref, drop, window)
    return Evaluation(Decision.NOTIFY, current_price, ref, drop, window)


def format_pounds(pence: int) -> str:
    return f"£{Decimal(pence) / 100:.2f}"


def build_notification(station, drop: int) -> AlertNotification:
    """``station`` is a search result for the cheapest station in the rule's area."""
    name = " ".join(p for p in (station.brand, station.name) if p)
    return AlertNotification(
        title=NOTIFICATION_TITLE,
        body=f"{name} now at {format_pounds(station.price_ppl)}/L (down {drop}p)",
        data={
            "stationId": station.station_id,
            "newPrice": station.price_ppl,
            "priceDrop": drop,
        },
    )


def count_recent(windows: Iterable[Iterable[str] | None], now: datetime, window_hours: int) -> int:
    """In-window notification count over several rules' timestamp lists."""
    return sum(len(trim_window(w, now, window_hours)) for w in windows)
