# backend/reservations/services/cancellation_policy.py
"""
Cancellation & refund policy evaluation.

Policy JSON (stored on the business):

    {
        "cutoff_hours": 2,
        "rules": [
            {"min_hours_before": 48, "refund_percent": 100},
            {"min_hours_before": 24, "refund_percent": 50},
            {"min_hours_before": 0,  "refund_percent": 0}
        ]
    }

A bare list of rules is accepted as well.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundRule:
    min_hours_before: float
    refund_percent: int


@dataclass(frozen=True)
class CancellationPolicy:
    rules: tuple[RefundRule, ...] = field(default_factory=tuple)
    cutoff_hours: float = 0


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    refund_percent: int


def parse_cancellation_policy(raw: str | dict | list | None) -> CancellationPolicy:
    """Build a policy from its JSON form. Malformed rules are skipped."""
    data = raw
    if isinstance(raw, str):
        try:
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            logger.warning(f"Malformed cancellation_policy ignored: {raw!r}")
            return CancellationPolicy()

    if isinstance(data, list):
        data = {"rules": data}
    if not isinstance(data, dict):
        return CancellationPolicy()

    rules = []
    for item in data.get("rules") or []:
        try:
            hours = float(item["min_hours_before"])
            percent = int(item["refund_percent"])
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Malformed refund rule skipped: {item!r}")
            continue
        rules.append(RefundRule(hours, max(0, min(100, percent))))

    try:
        cutoff = float(data.get("cutoff_hours") or 0)
    except (TypeError, ValueError):
        cutoff = 0

    rules.sort(key=lambda r: r.min_hours_before, reverse=True)
    return CancellationPolicy(rules=tuple(rules), cutoff_hours=cutoff)


def evaluate(policy: CancellationPolicy, starts_at: datetime, now: datetime) -> PolicyDecision:
    """
    Decide whether a booking starting at starts_at may be cancelled at now,
    and with what refund.

    - now at/after start          → not allowed, 0%
    - inside cutoff_hours         → not allowed, 0%
    - otherwise the rule with the largest min_hours_before that is still
      ≤ hours until start applies; no matching rule → allowed, 0%
    """
    hours_until = (starts_at - now).total_seconds() / 3600

    if hours_until <= 0:
        return PolicyDecision(allowed=False, refund_percent=0)

    if hours_until < policy.cutoff_hours:
        return PolicyDecision(allowed=False, refund_percent=0)

    matching = [rule for rule in policy.rules if rule.min_hours_before <= hours_until]
    if not matching:
        return PolicyDecision(allowed=True, refund_percent=0)

    best = max(matching, key=lambda rule: rule.min_hours_before)
    return PolicyDecision(allowed=True, refund_percent=best.refund_percent)
