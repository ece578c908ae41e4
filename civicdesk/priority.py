"""Priority scoring for civic reports.

The score combines three components:

* urgency: the base score chosen by the reporter (or an admin),
* community: a boost from the number of citizens who upvoted the report,
* recency: a small boost for reports filed in the last week.

The raw sum is clamped to [1.0, 5.0]. The stored ``priority`` is that sum
rounded half-up to an integer; ``final_score`` keeps one decimal for display.

Scores are recomputed only when urgency or the upvote count changes, using
the report's age at that moment. A report that is never touched again keeps
the recency boost it had at its last recompute.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from .models import Urgency

URGENCY_SCORES = {
    Urgency.LOW: 1.5,
    Urgency.MEDIUM: 2.5,
    Urgency.HIGH: 4.0,
    Urgency.CRITICAL: 5.0,
}
DEFAULT_URGENCY_SCORE = 2.5

# (min upvotes, max upvotes, boost), checked low to high
COMMUNITY_TIERS = [
    (1, 4, 0.2),
    (5, 9, 0.5),
    (10, 19, 1.0),
    (20, 49, 1.5),
    (50, None, 2.0),
]

MIN_SCORE = 1.0
MAX_SCORE = 5.0


@dataclass(frozen=True)
class PriorityBreakdown:
    urgency_score: float
    community_score: float
    recency_score: float
    final_score: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class PriorityResult:
    priority: int
    breakdown: PriorityBreakdown
    raw_score: float


def _round_half_up(value: float, places: int = 0) -> Decimal:
    exponent = Decimal(1).scaleb(-places)
    return Decimal(repr(value)).quantize(exponent, rounding=ROUND_HALF_UP)


def urgency_score(urgency) -> float:
    try:
        return URGENCY_SCORES[Urgency(urgency)]
    except (ValueError, KeyError):
        return DEFAULT_URGENCY_SCORE


def community_boost(upvote_count: int) -> float:
    upvotes = upvote_count or 0
    for low, high, boost in COMMUNITY_TIERS:
        if upvotes >= low and (high is None or upvotes <= high):
            return boost
    return 0.0


def recency_boost(age_days: float) -> float:
    if age_days < 1:
        return 0.2
    if age_days < 7:
        return 0.1
    return 0.0


def score(urgency, upvote_count: int, age_days: float) -> PriorityResult:
    """Score a report. Pure; unknown urgencies count as medium."""
    base = urgency_score(urgency)
    community = community_boost(upvote_count)
    recency = recency_boost(age_days)

    raw = min(max(base + community + recency, MIN_SCORE), MAX_SCORE)
    breakdown = PriorityBreakdown(
        urgency_score=base,
        community_score=community,
        recency_score=recency,
        final_score=float(_round_half_up(raw, 1)),
    )
    return PriorityResult(priority=int(_round_half_up(raw)), breakdown=breakdown, raw_score=raw)


def age_in_days(created_at: datetime, now: datetime) -> float:
    return max((now - created_at).total_seconds(), 0.0) / 86400


def score_report(report: dict, now: datetime) -> PriorityResult:
    """Recompute and store priority on a report document in place."""
    result = score(report.get("urgency"),
                   report.get("upvote_count", 0),
                   age_in_days(report["created_at"], now))
    report["priority"] = result.priority
    report["priority_breakdown"] = result.breakdown.to_dict()
    return result
