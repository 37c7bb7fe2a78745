"""
Vet consultation triage: listing, statistics and status transitions.

Status lifecycle:
    pending -> approved -> completed
    pending -> rejected
payment_pending, paid and cancelled are written by the payment backend.
"""

import logging
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from app.errors import InvalidInputError, NotFoundError
from app.models import Consultation, PetDetail, User
from app.overview import DayBounds
from app.sql_functions import epoch_seconds, local_date
from app.storage import gather_queries
from app.utils import iso, percentage, round1, round2, to_float, to_int, utc_now

logger = logging.getLogger(__name__)

URGENCY_ORDER = ("high", "medium", "low")


class ConsultationStatus(str, Enum):
    PENDING = "pending"
    PAYMENT_PENDING = "payment_pending"
    PAID = "paid"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ConsultationAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    COMPLETE = "complete"
    UPDATE_NOTES = "update_notes"


# Target status and the statuses an action may start from (None = any)
TRANSITIONS = {
    ConsultationAction.APPROVE: (ConsultationStatus.APPROVED, (ConsultationStatus.PENDING,)),
    ConsultationAction.REJECT: (ConsultationStatus.REJECTED, (ConsultationStatus.PENDING,)),
    ConsultationAction.COMPLETE: (ConsultationStatus.COMPLETED, (ConsultationStatus.APPROVED,)),
    ConsultationAction.UPDATE_NOTES: (None, None),
}


def parse_action(value: str) -> ConsultationAction:
    try:
        return ConsultationAction(value)
    except ValueError:
        raise InvalidInputError("Invalid action")


def parse_status_filter(value: Optional[str]) -> Optional[ConsultationStatus]:
    """``all`` (or nothing) means no status filter."""
    if not value or value == "all":
        return None
    try:
        return ConsultationStatus(value)
    except ValueError:
        raise InvalidInputError(f"Invalid status filter: {value}")


# =============================================================================
# Listing
# =============================================================================

def _pet_for_user():
    """First-registered pet per user."""
    first_pet = (
        select(PetDetail.user_id, func.min(PetDetail.id).label("pet_id"))
        .group_by(PetDetail.user_id)
        .subquery()
    )
    return (
        select(PetDetail)
        .join(first_pet, first_pet.c.pet_id == PetDetail.id)
        .subquery("pet")
    )


def _joined_record_query():
    pet = _pet_for_user()
    return (
        select(
            Consultation,
            User.parentname.label("user_name"),
            User.parentphone.label("phone_number"),
            User.parentemail.label("email"),
            pet.c.petname.label("pet_name"),
            pet.c.pettype.label("pet_type"),
            pet.c.breed.label("pet_breed"),
            pet.c.age.label("pet_age"),
        )
        .outerjoin(User, Consultation.user_id == User.id)
        .outerjoin(pet, pet.c.user_id == Consultation.user_id)
    )


def _format_record(row, include_email: bool = False) -> dict:
    c = row.Consultation
    record = {
        "id": c.id,
        "user_id": c.user_id,
        "issue_category": c.issue_category,
        "issue_description": c.issue_description,
        "preferred_time": c.preferred_time,
        "urgency": c.urgency,
        "status": c.status,
        "amount": to_float(c.amount) if c.amount is not None else None,
        "appointment_date": iso(c.appointment_date),
        "vet_notes": c.vet_notes,
        "created_at": iso(c.created_at),
        "updated_at": iso(c.updated_at),
        "user_name": row.user_name,
        "phone_number": row.phone_number,
        "pet_name": row.pet_name,
        "pet_type": row.pet_type,
        "pet_breed": row.pet_breed,
        "pet_age": row.pet_age,
    }
    if include_email:
        record["email"] = row.email
    return record


def list_consultations(db: Session, status: Optional[ConsultationStatus], limit: int, offset: int) -> list[dict]:
    query = _joined_record_query()
    if status is not None:
        query = query.where(Consultation.status == status.value)
    rows = db.execute(
        query.order_by(Consultation.created_at.desc(), Consultation.id.desc()).limit(limit).offset(offset)
    ).all()
    return [_format_record(row) for row in rows]


def count_consultations(db: Session, status: Optional[ConsultationStatus]) -> int:
    query = select(func.count()).select_from(Consultation)
    if status is not None:
        query = query.where(Consultation.status == status.value)
    return to_int(db.execute(query).scalar())


async def build_consultation_listing(status: Optional[ConsultationStatus], limit: int, offset: int) -> dict:
    consultations, total = await gather_queries(
        partial(list_consultations, status=status, limit=limit, offset=offset),
        partial(count_consultations, status=status),
    )
    return {
        "consultations": consultations,
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + limit < total,
        },
    }


def get_consultation(db: Session, consultation_id: int) -> dict:
    """Joined consultation record, or NotFoundError."""
    row = db.execute(_joined_record_query().where(Consultation.id == consultation_id)).first()
    if row is None:
        raise NotFoundError("Consultation not found")
    return _format_record(row, include_email=True)


# =============================================================================
# Statistics
# =============================================================================

def _status_count(status: ConsultationStatus):
    return func.count(case((Consultation.status == status.value, 1)))


def get_stats_overview(db: Session, bounds: DayBounds) -> dict:
    row = db.execute(
        select(
            func.count().label("total_consultations"),
            _status_count(ConsultationStatus.PAYMENT_PENDING).label("payment_pending"),
            _status_count(ConsultationStatus.PENDING).label("pending_approval"),
            _status_count(ConsultationStatus.APPROVED).label("approved"),
            _status_count(ConsultationStatus.REJECTED).label("rejected"),
            _status_count(ConsultationStatus.COMPLETED).label("completed"),
            func.count(case((Consultation.created_at >= bounds.today, 1))).label("today_bookings"),
            func.count(case((Consultation.created_at >= bounds.week_ago, 1))).label("week_bookings"),
            func.count(case((Consultation.created_at >= bounds.month_ago, 1))).label("month_bookings"),
            func.avg(Consultation.amount).label("avg_consultation_amount"),
            func.sum(case(
                (Consultation.status.in_([ConsultationStatus.APPROVED.value, ConsultationStatus.COMPLETED.value]),
                 Consultation.amount),
            )).label("total_revenue"),
        ).select_from(Consultation)
    ).one()
    stats = {key: to_int(value) for key, value in row._mapping.items()}
    stats["avg_consultation_amount"] = round2(row.avg_consultation_amount)
    stats["total_revenue"] = to_float(row.total_revenue)
    return stats


def get_booking_trends(db: Session, bounds: DayBounds, offset_minutes: int) -> list[dict]:
    daily = (
        select(
            local_date(Consultation.created_at, offset_minutes).label("day"),
            Consultation.status,
            Consultation.amount,
        )
        .where(Consultation.created_at >= bounds.month_ago)
        .subquery()
    )
    rows = db.execute(
        select(
            daily.c.day,
            func.count().label("bookings"),
            func.count(case((daily.c.status == ConsultationStatus.APPROVED.value, 1))).label("approved"),
            func.count(case((daily.c.status == ConsultationStatus.COMPLETED.value, 1))).label("completed"),
            func.sum(daily.c.amount).label("revenue"),
        )
        .group_by(daily.c.day)
        .order_by(daily.c.day.desc())
    ).all()
    return [
        {
            "date": iso(row.day),
            "bookings": to_int(row.bookings),
            "approved": to_int(row.approved),
            "completed": to_int(row.completed),
            "revenue": to_float(row.revenue),
        }
        for row in rows
    ]


def get_category_distribution(db: Session, bounds: DayBounds) -> list[dict]:
    count = func.count()
    rows = db.execute(
        select(Consultation.issue_category, count.label("count"))
        .where(Consultation.created_at >= bounds.month_ago)
        .group_by(Consultation.issue_category)
        .order_by(count.desc(), Consultation.issue_category)
    ).all()
    total = sum(to_int(row.count) for row in rows)
    return [
        {
            "category": row.issue_category,
            "count": to_int(row.count),
            "percentage": percentage(row.count, total),
        }
        for row in rows
    ]


def get_urgency_distribution(db: Session, bounds: DayBounds) -> list[dict]:
    """Counts per urgency, high first, with mean hours from booking to appointment."""
    lead_hours = (epoch_seconds(Consultation.appointment_date) - epoch_seconds(Consultation.created_at)) / 3600.0
    scheduled = (Consultation.status == ConsultationStatus.APPROVED.value) & Consultation.appointment_date.is_not(None)
    rank = case(
        *((Consultation.urgency == level, position) for position, level in enumerate(URGENCY_ORDER)),
        else_=len(URGENCY_ORDER),
    )
    rows = db.execute(
        select(
            Consultation.urgency,
            func.count().label("count"),
            func.avg(case((scheduled, lead_hours))).label("avg_response_hours"),
        )
        .where(Consultation.created_at >= bounds.month_ago)
        .group_by(Consultation.urgency)
        .order_by(func.min(rank), Consultation.urgency)
    ).all()
    return [
        {
            "level": row.urgency,
            "count": to_int(row.count),
            "avg_response_hours": round1(row.avg_response_hours),
        }
        for row in rows
    ]


async def build_consultation_stats(offset_minutes: int) -> dict:
    bounds = DayBounds(offset_minutes)
    overview, trends, categories, urgency = await gather_queries(
        partial(get_stats_overview, bounds=bounds),
        partial(get_booking_trends, bounds=bounds, offset_minutes=offset_minutes),
        partial(get_category_distribution, bounds=bounds),
        partial(get_urgency_distribution, bounds=bounds),
    )
    return {
        "overview": overview,
        "trends": trends,
        "categories": categories,
        "urgency": urgency,
    }


# =============================================================================
# Status Transitions
# =============================================================================

def apply_action(
    db: Session,
    consultation_id: int,
    action: ConsultationAction,
    vet_notes: Optional[str] = None,
    appointment_date: Optional[datetime] = None,
    enforce_transitions: bool = True,
) -> dict:
    """
    Apply a triage action as one conditional UPDATE ... RETURNING.

    When enforcement is on, approve/reject only match pending rows and
    complete only matches approved rows. Zero rows back means either the id
    is unknown (NotFoundError) or the guard blocked it (InvalidInputError).
    """
    target, allowed_from = TRANSITIONS[action]

    values = {"vet_notes": vet_notes, "updated_at": utc_now()}
    if target is not None:
        values["status"] = target.value
    if action is ConsultationAction.APPROVE:
        values["appointment_date"] = appointment_date

    stmt = update(Consultation).where(Consultation.id == consultation_id)
    if enforce_transitions and allowed_from is not None:
        stmt = stmt.where(Consultation.status.in_([status.value for status in allowed_from]))
    stmt = stmt.values(**values).returning(Consultation.id, Consultation.status)

    updated = db.execute(stmt).first()
    if updated is None:
        db.rollback()
        exists = db.execute(select(Consultation.id).where(Consultation.id == consultation_id)).first()
        if exists is None:
            raise NotFoundError("Consultation not found")
        logger.info(f"Blocked consultation transition: id={consultation_id} action={action.value}")
        raise InvalidInputError("Invalid status transition")

    db.commit()
    logger.info(f"Consultation {consultation_id} {action.value}: status={updated.status}")
    return get_consultation(db, consultation_id)
