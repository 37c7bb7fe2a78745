"""
Top-level KPI tiles and the feedback list.
"""

import logging
from datetime import timedelta
from functools import partial
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from app.models import Feedback, Message, PetDetail, User
from app.sql_functions import local_hour
from app.storage import gather_queries
from app.utils import growth_rate, iso, local_midnight_utc, local_today, percentage, round1, to_int, utc_now

logger = logging.getLogger(__name__)

PEAK_HOUR_WINDOW_DAYS = 30
FEEDBACK_WINDOW_DAYS = 7
POSITIVE_RATING = 2


class DayBounds:
    """UTC instants for the starts of local today, yesterday and a week ago."""

    def __init__(self, offset_minutes: int):
        self.now = utc_now()
        today = local_today(offset_minutes, self.now)
        self.today = local_midnight_utc(today, offset_minutes)
        self.yesterday = self.today - timedelta(days=1)
        self.week_ago = self.today - timedelta(days=FEEDBACK_WINDOW_DAYS)
        self.month_ago = self.today - timedelta(days=PEAK_HOUR_WINDOW_DAYS)


def _between(column, start, end=None):
    cond = column >= start
    if end is not None:
        cond = cond & (column < end)
    return func.count(case((cond, 1)))


def get_user_stats(db: Session, bounds: DayBounds) -> dict:
    row = db.execute(
        select(
            func.count().label("total_users"),
            _between(User.created_at, bounds.today).label("new_users_today"),
            _between(User.created_at, bounds.yesterday, bounds.today).label("new_users_yesterday"),
            func.count(case((User.onboarding_complete.is_(True), 1))).label("completed_onboarding"),
        )
    ).one()
    return {key: to_int(value) for key, value in row._mapping.items()}


def get_message_stats(db: Session, bounds: DayBounds) -> dict:
    row = db.execute(
        select(
            func.count().label("total_messages"),
            _between(Message.created_at, bounds.today).label("messages_today"),
            _between(Message.created_at, bounds.yesterday, bounds.today).label("messages_yesterday"),
            func.count(func.distinct(
                case((Message.created_at >= bounds.today, Message.user_id))
            )).label("users_today"),
            func.count(func.distinct(
                case((Message.created_at >= bounds.now - timedelta(minutes=5), Message.user_id))
            )).label("active_now"),
            func.count(func.distinct(
                case((Message.created_at >= bounds.now - timedelta(hours=1), Message.user_id))
            )).label("active_last_hour"),
        )
    ).one()
    return {key: to_int(value) for key, value in row._mapping.items()}


def get_pet_stats(db: Session, bounds: DayBounds) -> dict:
    row = db.execute(
        select(
            func.count().label("total_pets"),
            _between(PetDetail.created_at, bounds.today).label("pets_added_today"),
        )
    ).one()
    return {key: to_int(value) for key, value in row._mapping.items()}


def get_feedback_stats(db: Session, bounds: DayBounds) -> dict:
    """Feedback over the last week; satisfaction is the share rated 2 or higher."""
    row = db.execute(
        select(
            func.count().label("total_feedback"),
            func.count(case((Feedback.feedback_rating >= POSITIVE_RATING, 1))).label("positive_feedback"),
            _between(Feedback.created_at, bounds.today).label("feedback_today"),
        ).where(Feedback.created_at >= bounds.week_ago)
    ).one()
    stats = {key: to_int(value) for key, value in row._mapping.items()}
    stats["satisfaction_rate"] = percentage(stats["positive_feedback"], stats["total_feedback"])
    return stats


def get_peak_hour(db: Session, bounds: DayBounds, offset_minutes: int) -> Optional[dict]:
    """
    Busiest local hour over the trailing window.

    Ties go to the earliest hour so repeated calls agree.
    """
    hourly = (
        select(local_hour(Message.created_at, offset_minutes).label("hour"))
        .where(Message.created_at >= bounds.month_ago)
        .subquery()
    )
    message_count = func.count()
    row = db.execute(
        select(hourly.c.hour, message_count.label("message_count"))
        .group_by(hourly.c.hour)
        .order_by(message_count.desc(), hourly.c.hour)
        .limit(1)
    ).first()
    if row is None:
        return None
    return {"hour": to_int(row.hour), "message_count": to_int(row.message_count)}


async def build_overview(offset_minutes: int, refresh_interval_ms: int) -> dict:
    """Fan out the KPI queries and assemble the tile data."""
    bounds = DayBounds(offset_minutes)
    users, messages, pets, feedback, peak = await gather_queries(
        partial(get_user_stats, bounds=bounds),
        partial(get_message_stats, bounds=bounds),
        partial(get_pet_stats, bounds=bounds),
        partial(get_feedback_stats, bounds=bounds),
        partial(get_peak_hour, bounds=bounds, offset_minutes=offset_minutes),
    )

    messages_per_user = (
        messages["messages_today"] / messages["users_today"] if messages["users_today"] else 0
    )
    return {
        "total_users": users["total_users"],
        "active_users_today": messages["users_today"],
        "active_now": messages["active_now"],
        "active_last_hour": messages["active_last_hour"],
        "total_messages": messages["total_messages"],
        "total_petdetails": pets["total_pets"],
        "messages_today": messages["messages_today"],
        "messages_per_user_today": round1(messages_per_user),
        "new_users_today": users["new_users_today"],
        "user_growth_rate": growth_rate(users["new_users_today"], users["new_users_yesterday"]),
        "message_growth_rate": growth_rate(messages["messages_today"], messages["messages_yesterday"]),
        "onboarding_completion_rate": percentage(users["completed_onboarding"], users["total_users"]),
        "total_pets": pets["total_pets"],
        "pets_added_today": pets["pets_added_today"],
        "total_feedback": feedback["total_feedback"],
        "satisfaction_rate": feedback["satisfaction_rate"],
        "feedback_today": feedback["feedback_today"],
        "peak_hour": peak["hour"] if peak else None,
        "peak_hour_messages": peak["message_count"] if peak else 0,
        "last_updated": iso(bounds.now),
        "update_interval": refresh_interval_ms,
    }


# =============================================================================
# Feedback
# =============================================================================

def get_feedbacks(db: Session, feedback_type: Optional[str] = None) -> list[dict]:
    """Feedback rows newest first, optionally restricted to one type."""
    query = select(Feedback).order_by(Feedback.created_at.desc(), Feedback.id.desc())
    if feedback_type:
        query = query.where(Feedback.feedback_type == feedback_type)
    feedbacks = db.execute(query).scalars().all()
    logger.debug(f"Fetched {len(feedbacks)} feedback rows (type={feedback_type})")
    return [
        {
            "id": str(fb.id),
            "phone": fb.user_phone,
            "type": fb.feedback_type,
            "content": fb.feedback_content,
            "rating": fb.feedback_rating,
            "createdAt": iso(fb.created_at),
        }
        for fb in feedbacks
    ]
