"""
Conversation threads: the paginated thread list and the per-user
conversation view.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from functools import partial
from typing import Optional

from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session

from app.errors import NotFoundError
from app.models import Feedback, Message, PetDetail, User
from app.sql_functions import epoch_seconds
from app.storage import gather_queries
from app.utils import activity_score, iso, local_midnight_utc, local_today, round0, round2, to_float, to_int, truncate, utc_now

logger = logging.getLogger(__name__)

USER_SENDER = "user"
HIGH_ACTIVITY_MESSAGES = 10
RESPONSE_GAP_LIMIT_SECONDS = 3600
FEEDBACK_LIMIT = 10


class ThreadFilter(str, Enum):
    ALL = "all"
    ACTIVE = "active"
    NEW_TODAY = "new_today"
    WITH_PETS = "with_pets"
    HIGH_ACTIVITY = "high_activity"


class ThreadSort(str, Enum):
    RECENT = "recent"
    MESSAGES = "messages"
    ALPHABETICAL = "alphabetical"
    CREATED = "created"


@dataclass(frozen=True)
class ThreadQuery:
    limit: int = 50
    offset: int = 0
    search: str = ""
    filter: ThreadFilter = ThreadFilter.ALL
    sort: ThreadSort = ThreadSort.RECENT


def like_pattern(search: str) -> str:
    """Substring pattern with the user's own LIKE wildcards escaped."""
    escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


# =============================================================================
# Building Blocks
# =============================================================================

def _latest_message():
    """Most recent message per user; ties on created_at go to the higher message_id."""
    ranked = select(
        Message.user_id,
        Message.content,
        Message.created_at,
        Message.sender,
        func.row_number().over(
            partition_by=Message.user_id,
            order_by=(Message.created_at.desc(), Message.message_id.desc()),
        ).label("rn"),
    ).subquery()
    return (
        select(ranked.c.user_id, ranked.c.content, ranked.c.created_at, ranked.c.sender)
        .where(ranked.c.rn == 1)
        .subquery("latest_msg")
    )


def _primary_pet():
    """One pet record per user (the newest) so joins never duplicate users."""
    ranked = select(
        PetDetail,
        func.row_number().over(
            partition_by=PetDetail.user_id,
            order_by=(PetDetail.created_at.desc(), PetDetail.id.desc()),
        ).label("rn"),
    ).subquery()
    return select(ranked).where(ranked.c.rn == 1).subquery("pet")


def _message_counts():
    return (
        select(
            Message.user_id,
            func.count().label("message_count"),
            func.count(case((Message.sender == USER_SENDER, 1))).label("user_messages"),
            func.count(case((Message.sender != USER_SENDER, 1))).label("bot_messages"),
        )
        .group_by(Message.user_id)
        .subquery("msg_count")
    )


# =============================================================================
# Thread Listing
# =============================================================================

class ThreadListing:
    """
    The thread list statement pair.

    The page query and the count query share one join tree and one WHERE
    clause list, so the total always matches the unpaginated row count.
    """

    def __init__(self, params: ThreadQuery, offset_minutes: int, excluded_phone_pattern: str):
        self.params = params
        self.now = utc_now()
        self.today_start = local_midnight_utc(local_today(offset_minutes, self.now), offset_minutes)

        self.latest = _latest_message()
        self.pet = _primary_pet()
        self.counts = _message_counts()
        self.source = (
            User.__table__
            .outerjoin(self.pet, self.pet.c.user_id == User.id)
            .outerjoin(self.latest, self.latest.c.user_id == User.id)
            .outerjoin(self.counts, self.counts.c.user_id == User.id)
        )
        self.sort_time = func.coalesce(self.latest.c.created_at, User.created_at)
        self.conditions = self._conditions(excluded_phone_pattern)

    def _conditions(self, excluded_phone_pattern: str) -> list:
        conds = [or_(User.parentphone.is_(None), User.parentphone.not_like(excluded_phone_pattern))]

        if self.params.search:
            pattern = like_pattern(self.params.search)
            conds.append(or_(
                User.parentname.ilike(pattern, escape="\\"),
                User.parentphone.ilike(pattern, escape="\\"),
                User.parentemail.ilike(pattern, escape="\\"),
                self.latest.c.content.ilike(pattern, escape="\\"),
                self.pet.c.petname.ilike(pattern, escape="\\"),
            ))

        filters = {
            ThreadFilter.ALL: None,
            ThreadFilter.ACTIVE: self.latest.c.created_at >= self.now - timedelta(hours=24),
            ThreadFilter.NEW_TODAY: User.created_at >= self.today_start,
            ThreadFilter.WITH_PETS: self.pet.c.id.is_not(None),
            ThreadFilter.HIGH_ACTIVITY: self.counts.c.message_count >= HIGH_ACTIVITY_MESSAGES,
        }
        condition = filters[self.params.filter]
        if condition is not None:
            conds.append(condition)
        return conds

    def _ordering(self) -> list:
        orderings = {
            ThreadSort.RECENT: [self.sort_time.desc().nulls_last()],
            ThreadSort.MESSAGES: [self.counts.c.message_count.desc().nulls_last(), self.sort_time.desc()],
            ThreadSort.ALPHABETICAL: [User.parentname.asc().nulls_last(), User.parentphone.asc()],
            ThreadSort.CREATED: [User.created_at.desc()],
        }
        return orderings[self.params.sort] + [User.id.asc()]

    def page_statement(self):
        return (
            select(
                User.id.label("user_id"),
                User.parentname,
                User.parentphone,
                User.parentemail,
                User.created_at.label("user_created"),
                User.last_user_msg,
                User.onboarding_complete,
                self.latest.c.content.label("last_message"),
                self.latest.c.created_at.label("last_activity"),
                self.latest.c.sender.label("last_sender"),
                func.coalesce(self.counts.c.message_count, 0).label("message_count"),
                func.coalesce(self.counts.c.user_messages, 0).label("user_messages"),
                func.coalesce(self.counts.c.bot_messages, 0).label("bot_messages"),
                self.pet.c.petname,
                self.pet.c.pettype,
                self.pet.c.breed,
                self.pet.c.age.label("pet_age"),
                self.pet.c.petgender,
            )
            .select_from(self.source)
            .where(*self.conditions)
            .order_by(*self._ordering())
            .limit(self.params.limit)
            .offset(self.params.offset)
        )

    def count_statement(self):
        return select(func.count(func.distinct(User.id))).select_from(self.source).where(*self.conditions)

    def fetch_page(self, db: Session) -> list:
        return db.execute(self.page_statement()).all()

    def fetch_total(self, db: Session) -> int:
        return to_int(db.execute(self.count_statement()).scalar())

    def format_thread(self, row) -> dict:
        is_recent = row.last_activity is not None and row.last_activity >= self.now - timedelta(hours=1)
        is_new_today = row.user_created is not None and row.user_created >= self.today_start
        has_pet = bool(row.petname)
        return {
            "user_id": row.user_id,
            "user_name": row.parentname or row.parentphone or "Unknown User",
            "user_phone": row.parentphone,
            "user_email": row.parentemail,
            "user_created": iso(row.user_created),
            "last_user_msg": iso(row.last_user_msg),
            "onboarding_complete": row.onboarding_complete,
            "last_message": truncate(row.last_message or "No messages yet"),
            "last_activity": iso(row.last_activity) or iso(row.user_created),
            "last_sender": row.last_sender or "system",
            "message_count": to_int(row.message_count),
            "user_messages": to_int(row.user_messages),
            "bot_messages": to_int(row.bot_messages),
            "pet_info": {
                "name": row.petname,
                "type": row.pettype,
                "breed": row.breed,
                "age": row.pet_age,
                "gender": row.petgender,
            } if has_pet else None,
            "is_recent_activity": is_recent,
            "is_new_today": is_new_today,
            "activity_score": activity_score(row.message_count, is_recent, is_new_today, has_pet),
        }


async def build_thread_listing(params: ThreadQuery, offset_minutes: int, excluded_phone_pattern: str) -> dict:
    """Run the page and count queries concurrently and shape the thread list."""
    listing = ThreadListing(params, offset_minutes, excluded_phone_pattern)
    rows, total = await gather_queries(listing.fetch_page, listing.fetch_total)
    threads = [listing.format_thread(row) for row in rows]
    logger.debug(f"Thread listing: {len(threads)} of {total} (filter={params.filter.value}, sort={params.sort.value})")
    return {
        "threads": threads,
        "pagination": {
            "total": total,
            "offset": params.offset,
            "limit": params.limit,
            "has_more": params.offset + len(threads) < total,
        },
        "filters": {
            "search": params.search,
            "filter": params.filter.value,
            "sort": params.sort.value,
        },
    }


# =============================================================================
# Conversation View
# =============================================================================

def get_user_with_pet(db: Session, user_id: int):
    """The user row joined to their pet, or None."""
    pet = _primary_pet()
    return db.execute(
        select(
            User,
            pet.c.petname,
            pet.c.pettype,
            pet.c.breed,
            pet.c.age.label("pet_age"),
            pet.c.petgender,
            pet.c.weight,
            pet.c.neutered,
            pet.c.petdob,
            pet.c.created_at.label("pet_created"),
        )
        .outerjoin(pet, pet.c.user_id == User.id)
        .where(User.id == user_id)
    ).first()


def get_message_page(db: Session, user_id: int, limit: int, offset: int) -> list[dict]:
    messages = db.execute(
        select(Message)
        .where(Message.user_id == user_id)
        .order_by(Message.created_at.asc(), Message.message_id.asc())
        .limit(limit)
        .offset(offset)
    ).scalars().all()
    return [
        {
            "message_id": msg.message_id,
            "content": msg.content,
            "sender": msg.sender,
            "timestamp": iso(msg.created_at),
            "is_user": msg.sender == USER_SENDER,
            "bucket_index": msg.bucket_index,
        }
        for msg in messages
    ]


def get_message_totals(db: Session, user_id: int) -> dict:
    row = db.execute(
        select(
            func.count().label("total_messages"),
            func.count(case((Message.sender == USER_SENDER, 1))).label("user_messages"),
            func.count(case((Message.sender != USER_SENDER, 1))).label("bot_messages"),
            func.min(Message.created_at).label("first_message"),
            func.max(Message.created_at).label("last_message"),
        ).where(Message.user_id == user_id)
    ).one()
    return dict(row._mapping)


def get_average_response_gap(db: Session, user_id: int) -> float:
    """
    Mean gap in seconds between consecutive messages, ignoring gaps of an
    hour or more (those are new sessions, not replies).
    """
    ts = epoch_seconds(Message.created_at)
    timeline = select(
        ts.label("ts"),
        func.lag(ts).over(order_by=(Message.created_at, Message.message_id)).label("prev_ts"),
    ).where(Message.user_id == user_id).subquery()
    gap = timeline.c.ts - timeline.c.prev_ts
    value = db.execute(
        select(func.avg(case((gap < RESPONSE_GAP_LIMIT_SECONDS, gap))))
        .where(timeline.c.prev_ts.is_not(None))
    ).scalar()
    return to_float(value)


def get_user_feedback(db: Session, phone: Optional[str]) -> list[dict]:
    if not phone:
        return []
    rows = db.execute(
        select(Feedback)
        .where(Feedback.user_phone == phone)
        .order_by(Feedback.created_at.desc(), Feedback.id.desc())
        .limit(FEEDBACK_LIMIT)
    ).scalars().all()
    return [
        {
            "content": fb.feedback_content,
            "rating": fb.feedback_rating,
            "type": fb.feedback_type,
            "created_at": iso(fb.created_at),
        }
        for fb in rows
    ]


def _format_profile(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.parentname,
        "phone": user.parentphone,
        "email": user.parentemail,
        "created_at": iso(user.created_at),
        "last_user_msg": iso(user.last_user_msg),
        "onboarding_complete": user.onboarding_complete,
        "has_seen_welcome": user.has_seen_welcome,
        "location": user.location_address,
        "referral_code": user.referralcode,
        "invites_left": user.numberofinvitesleft,
    }


def _format_pet(row) -> Optional[dict]:
    if not row.petname:
        return None
    return {
        "name": row.petname,
        "type": row.pettype,
        "breed": row.breed,
        "age": row.pet_age,
        "gender": row.petgender,
        "weight": row.weight,
        "neutered": row.neutered,
        "date_of_birth": iso(row.petdob),
        "pet_created": iso(row.pet_created),
    }


def _conversation_analytics(totals: dict, avg_gap: float) -> dict:
    first, last = totals["first_message"], totals["last_message"]
    duration_minutes = round0((last - first).total_seconds() / 60) if first and last else 0
    total = to_int(totals["total_messages"])
    return {
        "total_messages": total,
        "user_messages": to_int(totals["user_messages"]),
        "bot_messages": to_int(totals["bot_messages"]),
        "first_message": iso(first),
        "last_message": iso(last),
        "conversation_duration_minutes": duration_minutes,
        "avg_response_time_seconds": round0(avg_gap),
        "messages_per_day": round2(total / (duration_minutes / (24 * 60))) if duration_minutes > 0 else 0,
    }


async def build_conversation(user_id: int, limit: int, offset: int) -> dict:
    """
    Profile, pet, a page of messages, analytics and feedback for one user.

    Raises NotFoundError when the user does not exist.
    """
    (user_row,) = await gather_queries(partial(get_user_with_pet, user_id=user_id))
    if user_row is None:
        raise NotFoundError("User not found")
    user = user_row.User

    messages, totals, avg_gap, feedback = await gather_queries(
        partial(get_message_page, user_id=user_id, limit=limit, offset=offset),
        partial(get_message_totals, user_id=user_id),
        partial(get_average_response_gap, user_id=user_id),
        partial(get_user_feedback, phone=user.parentphone),
    )
    total = to_int(totals["total_messages"])
    return {
        "user_profile": _format_profile(user),
        "pet_info": _format_pet(user_row),
        "messages": messages,
        "conversation_analytics": _conversation_analytics(totals, avg_gap),
        "user_feedback": feedback,
        "pagination": {
            "total": total,
            "offset": offset,
            "limit": limit,
            "has_more": offset + len(messages) < total,
        },
    }
