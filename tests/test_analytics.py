"""
Tests for GET /api/dashboard/analytics and GET /api/dashboard/analytics/users.

Tests cover:
- Daily activity series and summary (DAU, new vs returning, retention)
- Period active users vs the sum of daily DAU
- Explicit date ranges and invalid parameters
- Engagement tier boundaries
- Cohort retention, registrations, geography, onboarding and peak hours
"""

from datetime import timedelta

import pytest


@pytest.fixture
def retention_scenario(factory):
    """A, B, C active yesterday; B, C, D active today."""
    users = {name: factory.user(name=name) for name in "ABCD"}
    for name in "ABC":
        factory.message(users[name], factory.local(days_ago=1, hour=10))
    factory.message(users["A"], factory.local(days_ago=3, hour=10))
    for name in "BCD":
        factory.message(users[name], factory.local(days_ago=0, hour=9))
    return users


class TestActivityReport:
    """Tests for the activity report."""

    def test_empty_store(self, client):
        response = client.get("/api/dashboard/analytics")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        summary = body["data"]["summary"]
        assert summary["dau_last_day"] == 0
        assert summary["retention_rate"] == 0
        assert summary["period_active_users"] == 0
        assert body["data"]["daily_data"] == []
        assert body["data"]["meta"]["period_days"] == 30

    def test_day_over_day_retention(self, client, retention_scenario):
        summary = client.get("/api/dashboard/analytics?days=7").json()["data"]["summary"]

        assert summary["retention_rate"] == 66.7
        assert summary["dau_last_day"] == 3
        assert summary["dau_growth"] == 0

    def test_new_vs_returning_on_last_day(self, client, retention_scenario):
        summary = client.get("/api/dashboard/analytics?days=7").json()["data"]["summary"]

        assert summary["new_users_last_day"] == 1
        assert summary["returning_users_last_day"] == 2

    def test_period_users_are_distinct(self, client, retention_scenario):
        """Summing daily DAU double counts users active on several days."""
        data = client.get("/api/dashboard/analytics?days=7").json()["data"]

        assert data["summary"]["period_active_users"] == 4
        assert sum(day["dau"] for day in data["daily_data"]) == 7

    def test_daily_series_ascending(self, client, retention_scenario):
        daily = client.get("/api/dashboard/analytics?days=7").json()["data"]["daily_data"]

        dates = [day["date"] for day in daily]
        assert dates == sorted(dates)
        assert len(dates) == 3

    def test_new_users_counted_on_first_day_only(self, client, retention_scenario):
        daily = client.get("/api/dashboard/analytics?days=7").json()["data"]["daily_data"]

        # A first appears three days ago, B and C yesterday, D today
        assert [day["new_users"] for day in daily] == [1, 2, 1]
        assert [day["repeat_users"] for day in daily] == [0, 1, 2]

    def test_explicit_date_range(self, client, factory, retention_scenario):
        yesterday = (factory.local(days_ago=1) + timedelta(minutes=factory.offset)).date().isoformat()

        data = client.get(f"/api/dashboard/analytics?start_date={yesterday}&end_date={yesterday}").json()["data"]

        assert data["meta"]["period_days"] == 1
        assert data["meta"]["end_date"] == yesterday
        assert [day["date"] for day in data["daily_data"]] == [yesterday]
        assert data["daily_data"][0]["dau"] == 3
        assert data["summary"]["last_day_date"] == yesterday

    def test_start_after_end_rejected(self, client):
        response = client.get("/api/dashboard/analytics?start_date=2025-02-01&end_date=2025-01-01")

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_malformed_days_rejected(self, client):
        response = client.get("/api/dashboard/analytics?days=abc")

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "Invalid request parameters"
        assert "days" in body["details"]


class TestEngagementTiers:
    """Tier bins are closed on both ends."""

    def test_tier_boundaries(self, client, factory):
        start = factory.local(days_ago=2)
        for name, count in [("one", 1), ("five", 5), ("six", 6), ("fifty", 50), ("fifty-one", 51)]:
            factory.messages(factory.user(name=name), count, start)

        tiers = client.get("/api/dashboard/analytics/users").json()["data"]["engagement_distribution"]

        assert [(t["tier"], t["user_count"], t["avg_messages"]) for t in tiers] == [
            ("1 message", 1, 1),
            ("2-5 messages", 1, 5),
            ("6-15 messages", 1, 6),
            ("16-50 messages", 1, 50),
            ("50+ messages", 1, 51),
        ]
        assert all(t["avg_active_days"] == 1.0 for t in tiers)

    def test_bot_messages_not_counted(self, client, factory):
        user = factory.user()
        factory.message(user, factory.local(days_ago=1))
        factory.messages(user, 4, factory.local(days_ago=1, hour=13), sender="bot")

        tiers = client.get("/api/dashboard/analytics/users").json()["data"]["engagement_distribution"]

        assert tiers == [{"tier": "1 message", "user_count": 1, "avg_messages": 1, "avg_active_days": 1.0}]


class TestUserReport:
    """Tests for the user analytics report."""

    def test_cohort_retention_exact_day_match(self, client, factory):
        kept = factory.user(name="kept")
        lost = factory.user(name="lost")
        factory.message(kept, factory.local(days_ago=8))
        factory.message(lost, factory.local(days_ago=8))
        factory.message(kept, factory.local(days_ago=7))  # day 1
        factory.message(kept, factory.local(days_ago=3))  # day 5, no bucket
        factory.message(kept, factory.local(days_ago=1))  # day 7

        cohorts = client.get("/api/dashboard/analytics/users").json()["data"]["retention_analysis"]

        assert len(cohorts) == 1
        cohort = cohorts[0]
        assert cohort["cohort_size"] == 2
        assert cohort["retention_day_1"] == 50.0
        assert cohort["retention_day_7"] == 50.0
        assert cohort["retention_day_30"] == 0

    def test_cohorts_newest_first(self, client, factory):
        factory.message(factory.user(name="early"), factory.local(days_ago=5))
        factory.message(factory.user(name="late"), factory.local(days_ago=2))

        cohorts = client.get("/api/dashboard/analytics/users").json()["data"]["retention_analysis"]

        dates = [c["cohort_date"] for c in cohorts]
        assert dates == sorted(dates, reverse=True)
        assert len(dates) == 2

    def test_registration_trend_cumulative(self, client, factory):
        factory.user(name="a", created_at=factory.local(days_ago=3))
        factory.user(name="b", created_at=factory.local(days_ago=3, hour=14))
        factory.user(name="c", created_at=factory.local(days_ago=1))
        factory.user(name="old", created_at=factory.local(days_ago=90))

        data = client.get("/api/dashboard/analytics/users?range=30").json()["data"]

        trend = data["registration_trends"]
        assert [(t["new_users"], t["cumulative_users"]) for t in trend] == [(1, 3), (2, 2)]
        assert data["summary"]["total_new_users"] == 3
        assert data["summary"]["time_range_days"] == 30

    def test_geographic_distribution_needs_two_users(self, client, factory):
        recent = factory.local(days_ago=2)
        factory.user(name="a", created_at=recent, location_address="Pune")
        factory.user(name="b", created_at=recent, location_address="Pune")
        factory.user(name="c", created_at=recent, location_address="Delhi")

        geo = client.get("/api/dashboard/analytics/users").json()["data"]["geographic_distribution"]

        assert geo == [{"location": "Pune", "user_count": 2}]

    def test_onboarding_split(self, client, factory):
        recent = factory.local(days_ago=2)
        factory.user(name="a", created_at=recent, onboarding_complete=True)
        factory.user(name="b", created_at=recent, onboarding_complete=True)
        factory.user(name="c", created_at=recent, onboarding_complete=False)
        factory.user(name="d", created_at=recent, onboarding_complete=None)

        split = client.get("/api/dashboard/analytics/users").json()["data"]["onboarding_completion"]

        by_status = {row["status"]: row for row in split}
        assert by_status["Completed"]["user_count"] == 2
        assert by_status["Completed"]["percentage"] == 50.0
        assert by_status["Incomplete"]["percentage"] == 25.0
        assert by_status["Unknown"]["user_count"] == 1

    def test_peak_hours_in_local_time(self, client, factory):
        user = factory.user()
        factory.message(user, factory.local(days_ago=1, hour=9))
        factory.message(user, factory.local(days_ago=2, hour=9, minute=30))
        factory.message(factory.user(name="other"), factory.local(days_ago=1, hour=21))

        hours = client.get("/api/dashboard/analytics/users").json()["data"]["peak_activity_hours"]

        assert hours == [
            {"hour": 9, "unique_users": 1, "total_messages": 2},
            {"hour": 21, "unique_users": 1, "total_messages": 1},
        ]

    def test_range_must_be_positive(self, client):
        response = client.get("/api/dashboard/analytics/users?range=0")

        assert response.status_code == 400
