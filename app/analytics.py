"""
Activity analytics over the message log.

Two reports live here:
- the activity report behind /api/dashboard/analytics (daily series, period
  active users, day-over-day retention, new vs returning users)
- the user report behind /api/dashboard/analytics/users (registrations,
  DAU, cohort retention, geography, engagement tiers, onboarding, peak hours)

Query functions take a Session and return plain dicts; the async report
builders fan the independent ones out with gather_queries.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from functools import partial
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from app.models import Message, User
from app.sql_functions import local_date, local_day_number, local_hour
from app.storage import gather_queries
from app.utils import (
    growth_rate,
    iso,
    local_midnight_utc,
    local_today,
    percentage,
    retention_rate,
    round0,
    round1,
    to_int,
    utc_now,
)

logger = logging.getLogger(__name__)

USER_SENDER = "user"
COHORT_LIMIT = 20
GEO_LIMIT = 15
RETENTION_DAYS = (1, 7, 30)


@dataclass(frozen=True)
class ActivityWindow:
    """
    Inclusive range of local dates. end is None for a trailing window that
    runs up to now.
    """
    start: date
    end: Optional[date]
    period_days: int

    @classmethod
    def resolve(
        cls,
        offset_minutes: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        days: int = 30,
    ) -> "ActivityWindow":
        if start_date and end_date:
            return cls(start=start_date, end=end_date, period_days=(end_date - start_date).days + 1)
        today = local_today(offset_minutes)
        return cls(start=today - timedelta(days=days), end=None, period_days=days)

    def conditions(self, day_expr) -> list:
        conds = [day_expr >= self.start]
        if self.end is not None:
            conds.append(day_expr <= self.end)
        return conds


# =============================================================================
# Activity Report Queries
# =============================================================================

def get_daily_activity(db: Session, window: ActivityWindow, offset_minutes: int) -> list[dict]:
    """
    DAU, message count and first-time users per local date, ascending.

    A user is new on a day when their earliest message ever falls on it.
    """
    day = local_date(Message.created_at, offset_minutes)
    in_window = (
        select(Message.user_id, day.label("day"))
        .where(*window.conditions(day))
        .subquery()
    )
    first_seen = (
        select(Message.user_id, func.min(day).label("first_day"))
        .group_by(Message.user_id)
        .subquery()
    )
    rows = db.execute(
        select(
            in_window.c.day,
            func.count(func.distinct(in_window.c.user_id)).label("dau"),
            func.count().label("messages"),
            func.count(func.distinct(
                case((first_seen.c.first_day == in_window.c.day, in_window.c.user_id))
            )).label("new_users"),
        )
        .select_from(in_window.join(first_seen, first_seen.c.user_id == in_window.c.user_id))
        .group_by(in_window.c.day)
        .order_by(in_window.c.day)
    ).all()

    daily = []
    for row in rows:
        dau = to_int(row.dau)
        new_users = to_int(row.new_users)
        daily.append({
            "date": iso(row.day),
            "dau": dau,
            "new_users": new_users,
            "repeat_users": dau - new_users,
            "messages": to_int(row.messages),
        })
    logger.debug(f"Daily activity: {len(daily)} days from {window.start}")
    return daily


def count_period_active_users(db: Session, window: ActivityWindow, offset_minutes: int) -> int:
    """Distinct users over the whole window; not the sum of daily DAU."""
    day = local_date(Message.created_at, offset_minutes)
    total = db.execute(
        select(func.count(func.distinct(Message.user_id))).where(*window.conditions(day))
    ).scalar()
    return to_int(total)


def get_day_over_day_retention(db: Session, today: date, offset_minutes: int) -> dict:
    """Users active yesterday who came back today, on local calendar days."""
    day = local_date(Message.created_at, offset_minutes)
    today_users = select(Message.user_id).where(day == today).distinct().subquery()
    yesterday_users = (
        select(Message.user_id)
        .where(day == today - timedelta(days=1))
        .distinct()
        .subquery()
    )
    row = db.execute(
        select(
            select(func.count()).select_from(yesterday_users).scalar_subquery().label("yesterday_count"),
            select(func.count())
            .select_from(today_users.join(yesterday_users, today_users.c.user_id == yesterday_users.c.user_id))
            .scalar_subquery()
            .label("both_days_count"),
        )
    ).one()
    yesterday_count = to_int(row.yesterday_count)
    both_days_count = to_int(row.both_days_count)
    return {
        "yesterday_count": yesterday_count,
        "both_days_count": both_days_count,
        "retention_rate": retention_rate(both_days_count, yesterday_count),
    }


def get_new_vs_returning(db: Session, day_value: date, offset_minutes: int) -> dict:
    """
    Split the users active on a local date into new and returning.

    Needs every user's first message date, so this scans the full message log.
    """
    day = local_date(Message.created_at, offset_minutes)
    first_seen = (
        select(Message.user_id, func.min(day).label("first_day"))
        .group_by(Message.user_id)
        .subquery()
    )
    active = select(Message.user_id).where(day == day_value).distinct().subquery()
    row = db.execute(
        select(
            func.count().label("total"),
            func.count(case((first_seen.c.first_day == day_value, 1))).label("new_users"),
        ).select_from(active.join(first_seen, first_seen.c.user_id == active.c.user_id))
    ).one()
    total = to_int(row.total)
    new_users = to_int(row.new_users)
    return {"total": total, "new_users": new_users, "returning_users": total - new_users}


async def build_activity_report(window: ActivityWindow, offset_minutes: int) -> dict:
    """Fan out the activity queries and assemble the /analytics payload."""
    today = local_today(offset_minutes)
    last_day = window.end or today

    daily, period_active_users, retention, split = await gather_queries(
        partial(get_daily_activity, window=window, offset_minutes=offset_minutes),
        partial(count_period_active_users, window=window, offset_minutes=offset_minutes),
        partial(get_day_over_day_retention, today=today, offset_minutes=offset_minutes),
        partial(get_new_vs_returning, day_value=last_day, offset_minutes=offset_minutes),
    )

    last_dau = daily[-1]["dau"] if daily else 0
    previous_dau = daily[-2]["dau"] if len(daily) > 1 else 0
    avg_dau = sum(row["dau"] for row in daily) / len(daily) if daily else 0

    return {
        "summary": {
            "dau_last_day": last_dau,
            "dau_growth": growth_rate(last_dau, previous_dau),
            "new_users_last_day": split["new_users"],
            "returning_users_last_day": split["returning_users"],
            "retention_rate": retention["retention_rate"],
            "period_active_users": period_active_users,
            "avg_dau_period": round0(avg_dau),
            "last_day_date": iso(last_day),
        },
        "daily_data": daily,
        "meta": {
            "period_days": window.period_days,
            "start_date": iso(window.start),
            "end_date": iso(window.end),
            "last_updated": iso(utc_now()),
        },
    }


# =============================================================================
# User Report Queries
# =============================================================================

def get_registration_trend(db: Session, start_day: date, offset_minutes: int) -> list[dict]:
    """New users per local date with a running total, newest first."""
    day = local_date(User.created_at, offset_minutes)
    registered = select(day.label("day")).where(day >= start_day).subquery()
    rows = db.execute(
        select(registered.c.day, func.count().label("new_users"))
        .group_by(registered.c.day)
        .order_by(registered.c.day)
    ).all()

    trend = []
    cumulative = 0
    for row in rows:
        cumulative += to_int(row.new_users)
        trend.append({"date": iso(row.day), "new_users": to_int(row.new_users), "cumulative_users": cumulative})
    trend.reverse()
    return trend


def get_user_dau(db: Session, start_day: date, offset_minutes: int) -> list[dict]:
    """Users sending at least one message per local date, newest first."""
    day = local_date(Message.created_at, offset_minutes)
    sent = (
        select(Message.user_id, day.label("day"))
        .where(day >= start_day, Message.sender == USER_SENDER)
        .subquery()
    )
    rows = db.execute(
        select(
            sent.c.day,
            func.count(func.distinct(sent.c.user_id)).label("active_users"),
            func.count().label("total_messages"),
        )
        .group_by(sent.c.day)
        .order_by(sent.c.day.desc())
    ).all()
    return [
        {"date": iso(row.day), "active_users": to_int(row.active_users), "total_messages": to_int(row.total_messages)}
        for row in rows
    ]


def get_cohort_retention(db: Session, start_day: date, offset_minutes: int) -> list[dict]:
    """
    Cohorts of users keyed by their first active local date.

    For each cohort, the share of users who were active exactly 1, 7 and 30
    days after that date. Only user-sent messages count. The most recent
    COHORT_LIMIT cohorts are returned, newest first.
    """
    day_number = local_day_number(Message.created_at, offset_minutes)
    first_active = (
        select(
            Message.user_id,
            func.min(day_number).label("first_day"),
            func.min(local_date(Message.created_at, offset_minutes)).label("cohort_date"),
        )
        .where(Message.sender == USER_SENDER)
        .group_by(Message.user_id)
        .subquery()
    )
    active_days = (
        select(Message.user_id, day_number.label("day"))
        .where(Message.sender == USER_SENDER)
        .distinct()
        .subquery()
    )
    gap = active_days.c.day - first_active.c.first_day
    cohort_size = func.count(func.distinct(first_active.c.user_id))
    retained = [
        func.count(func.distinct(case((gap == n, active_days.c.user_id)))).label(f"day_{n}_retained")
        for n in RETENTION_DAYS
    ]
    rows = db.execute(
        select(first_active.c.cohort_date, cohort_size.label("cohort_size"), *retained)
        .select_from(first_active.join(active_days, active_days.c.user_id == first_active.c.user_id))
        .where(first_active.c.cohort_date >= start_day)
        .group_by(first_active.c.cohort_date)
        .having(cohort_size > 0)
        .order_by(first_active.c.cohort_date.desc())
        .limit(COHORT_LIMIT)
    ).all()

    cohorts = []
    for row in rows:
        size = to_int(row.cohort_size)
        cohort = {"cohort_date": iso(row.cohort_date), "cohort_size": size}
        for n in RETENTION_DAYS:
            cohort[f"retention_day_{n}"] = percentage(getattr(row, f"day_{n}_retained"), size)
        cohorts.append(cohort)
    return cohorts


def get_geographic_distribution(db: Session, start_day: date, offset_minutes: int) -> list[dict]:
    """Locations shared by more than one recent user."""
    location = func.coalesce(User.location_address, "Unknown")
    user_count = func.count()
    rows = db.execute(
        select(location.label("location"), user_count.label("user_count"))
        .where(User.created_at >= local_midnight_utc(start_day, offset_minutes))
        .group_by(User.location_address)
        .having(user_count > 1)
        .order_by(user_count.desc(), User.location_address)
        .limit(GEO_LIMIT)
    ).all()
    return [{"location": row.location, "user_count": to_int(row.user_count)} for row in rows]


def engagement_tier(message_count):
    """CASE expression bucketing a message count; every bin is closed-closed."""
    return case(
        (message_count == 1, "1 message"),
        (message_count.between(2, 5), "2-5 messages"),
        (message_count.between(6, 15), "6-15 messages"),
        (message_count.between(16, 50), "16-50 messages"),
        else_="50+ messages",
    )


def get_engagement_distribution(db: Session, start_day: date, offset_minutes: int) -> list[dict]:
    """Users bucketed by how many messages they sent in the range."""
    day = local_date(Message.created_at, offset_minutes)
    per_user = (
        select(
            Message.user_id,
            func.count().label("message_count"),
            func.count(func.distinct(day)).label("active_days"),
        )
        .where(day >= start_day, Message.sender == USER_SENDER)
        .group_by(Message.user_id)
        .subquery()
    )
    tiered = select(
        engagement_tier(per_user.c.message_count).label("tier"),
        per_user.c.message_count,
        per_user.c.active_days,
    ).subquery()
    rows = db.execute(
        select(
            tiered.c.tier,
            func.count().label("user_count"),
            func.avg(tiered.c.message_count).label("avg_messages"),
            func.avg(tiered.c.active_days).label("avg_active_days"),
        )
        .group_by(tiered.c.tier)
        .order_by(func.min(tiered.c.message_count))
    ).all()
    return [
        {
            "tier": row.tier,
            "user_count": to_int(row.user_count),
            "avg_messages": round0(row.avg_messages),
            "avg_active_days": round1(row.avg_active_days),
        }
        for row in rows
    ]


def get_onboarding_completion(db: Session, start_day: date, offset_minutes: int) -> list[dict]:
    rows = db.execute(
        select(User.onboarding_complete, func.count().label("user_count"))
        .where(User.created_at >= local_midnight_utc(start_day, offset_minutes))
        .group_by(User.onboarding_complete)
    ).all()
    total = sum(to_int(row.user_count) for row in rows)
    labels = {True: "Completed", False: "Incomplete", None: "Unknown"}
    return [
        {
            "status": labels[row.onboarding_complete],
            "user_count": to_int(row.user_count),
            "percentage": percentage(row.user_count, total),
        }
        for row in rows
    ]


def get_peak_activity_hours(db: Session, start_day: date, offset_minutes: int) -> list[dict]:
    """User-sent messages per local hour of day, ascending by hour."""
    hourly = (
        select(local_hour(Message.created_at, offset_minutes).label("hour"), Message.user_id)
        .where(local_date(Message.created_at, offset_minutes) >= start_day, Message.sender == USER_SENDER)
        .subquery()
    )
    rows = db.execute(
        select(
            hourly.c.hour,
            func.count(func.distinct(hourly.c.user_id)).label("unique_users"),
            func.count().label("total_messages"),
        )
        .group_by(hourly.c.hour)
        .order_by(hourly.c.hour)
    ).all()
    return [
        {"hour": to_int(row.hour), "unique_users": to_int(row.unique_users), "total_messages": to_int(row.total_messages)}
        for row in rows
    ]


async def build_user_report(range_days: int, offset_minutes: int) -> dict:
    """Fan out the seven user-report queries and assemble the payload."""
    start_day = local_today(offset_minutes) - timedelta(days=range_days)
    queries = [
        get_registration_trend,
        get_user_dau,
        get_cohort_retention,
        get_geographic_distribution,
        get_engagement_distribution,
        get_onboarding_completion,
        get_peak_activity_hours,
    ]
    (
        registrations,
        daily_active,
        cohorts,
        geography,
        engagement,
        onboarding,
        peak_hours,
    ) = await gather_queries(
        *(partial(query, start_day=start_day, offset_minutes=offset_minutes) for query in queries)
    )

    avg_dau = sum(row["active_users"] for row in daily_active) / len(daily_active) if daily_active else 0
    return {
        "registration_trends": registrations,
        "daily_active_users": daily_active,
        "retention_analysis": cohorts,
        "geographic_distribution": geography,
        "engagement_distribution": engagement,
        "onboarding_completion": onboarding,
        "peak_activity_hours": peak_hours,
        "summary": {
            "time_range_days": range_days,
            "total_new_users": sum(row["new_users"] for row in registrations),
            "avg_daily_active_users": round0(avg_dau),
        },
    }
