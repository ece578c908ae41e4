"""
Unit tests for priority scoring.

Pure functions only: no database, no app.
"""

from datetime import datetime, timedelta, timezone

import pytest

from civicdesk.models import Urgency
from civicdesk.priority import (
    COMMUNITY_TIERS, age_in_days, community_boost, recency_boost, score, score_report,
)


# ═══════════════════════════════════════════════════════════════════════════════
# SCORE
# ═══════════════════════════════════════════════════════════════════════════════

class TestScore:
    def test_critical_fresh_report_is_clamped(self):
        result = score("critical", 0, 0)
        assert result.breakdown.urgency_score == 5.0
        assert result.breakdown.community_score == 0.0
        assert result.breakdown.recency_score == 0.2
        assert result.raw_score == 5.0
        assert result.breakdown.final_score == 5.0
        assert result.priority == 5

    def test_low_urgency_with_upvotes_old_report(self):
        result = score(Urgency.LOW, 7, 10)
        assert result.breakdown.urgency_score == 1.5
        assert result.breakdown.community_score == 0.5
        assert result.breakdown.recency_score == 0.0
        assert result.raw_score == 2.0
        assert result.priority == 2

    def test_half_rounds_up(self):
        # 2.5 + 0 + 0 must round to 3, not banker's 2
        result = score("medium", 0, 30)
        assert result.raw_score == 2.5
        assert result.priority == 3

    def test_final_score_keeps_one_decimal(self):
        result = score("medium", 3, 2)  # 2.5 + 0.2 + 0.1
        assert result.breakdown.final_score == 2.8
        assert result.priority == 3

    def test_unknown_urgency_counts_as_medium(self):
        assert score("whenever", 0, 30).breakdown.urgency_score == 2.5
        assert score(None, 0, 30).breakdown.urgency_score == 2.5

    @pytest.mark.parametrize("urgency", list(Urgency))
    @pytest.mark.parametrize("upvotes", [0, 1, 4, 5, 9, 10, 19, 20, 49, 50, 10_000])
    @pytest.mark.parametrize("age", [0, 0.5, 1, 6.9, 7, 365])
    def test_priority_always_within_bounds(self, urgency, upvotes, age):
        result = score(urgency, upvotes, age)
        assert 1 <= result.priority <= 5
        assert 1.0 <= result.raw_score <= 5.0

    def test_more_upvotes_never_lowers_priority(self):
        for urgency in Urgency:
            previous = 0
            for upvotes in range(0, 80):
                current = score(urgency, upvotes, 3).priority
                assert current >= previous
                previous = current

    def test_score_is_deterministic(self):
        assert score("high", 12, 0.3) == score("high", 12, 0.3)


# ═══════════════════════════════════════════════════════════════════════════════
# COMPONENTS
# ═══════════════════════════════════════════════════════════════════════════════

class TestComponents:
    @pytest.mark.parametrize("upvotes,boost", [
        (0, 0.0), (1, 0.2), (4, 0.2), (5, 0.5), (9, 0.5),
        (10, 1.0), (19, 1.0), (20, 1.5), (49, 1.5), (50, 2.0), (500, 2.0),
    ])
    def test_community_tier_edges(self, upvotes, boost):
        assert community_boost(upvotes) == boost

    def test_tiers_do_not_overlap(self):
        for (_, high, _), (low, _, _) in zip(COMMUNITY_TIERS, COMMUNITY_TIERS[1:]):
            assert low == high + 1

    @pytest.mark.parametrize("age,boost", [
        (0, 0.2), (0.99, 0.2), (1, 0.1), (6.99, 0.1), (7, 0.0), (40, 0.0),
    ])
    def test_recency_edges(self, age, boost):
        assert recency_boost(age) == boost

    def test_age_never_negative(self):
        now = datetime(2024, 5, 1, tzinfo=timezone.utc)
        assert age_in_days(now + timedelta(hours=3), now) == 0.0
        assert age_in_days(now - timedelta(days=2), now) == 2.0


# ═══════════════════════════════════════════════════════════════════════════════
# SCORE_REPORT
# ═══════════════════════════════════════════════════════════════════════════════

class TestScoreReport:
    def test_writes_priority_and_breakdown(self):
        now = datetime(2024, 5, 10, tzinfo=timezone.utc)
        report = {"urgency": "high", "upvote_count": 20,
                  "created_at": now - timedelta(days=3)}
        result = score_report(report, now)
        assert report["priority"] == result.priority == 5
        assert report["priority_breakdown"] == {
            "urgency_score": 4.0, "community_score": 1.5,
            "recency_score": 0.1, "final_score": 5.0,
        }
