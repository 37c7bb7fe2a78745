"""
SQLAlchemy ORM models for the dashboard tables.

The tables are written by the messaging bot and the consultation backend;
this service only reads them (plus the consultation status update).
All timestamps are naive UTC.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Text

from app.storage import Base


class User(Base):
    """
    A WhatsApp contact (pet parent).

    Table: whatsapp_userinfo
    Phones matching ``whatsapp_%`` are system/test accounts.
    """
    __tablename__ = "whatsapp_userinfo"

    id = Column(Integer, primary_key=True, index=True)
    parentname = Column(String, nullable=True)
    parentphone = Column(String, nullable=True, index=True)
    parentemail = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, index=True)
    last_user_msg = Column(DateTime, nullable=True)
    onboarding_complete = Column(Boolean, nullable=True)
    has_seen_welcome = Column(Boolean, nullable=True)
    location_address = Column(String, nullable=True)
    referralcode = Column(String, nullable=True)
    numberofinvitesleft = Column(Integer, nullable=True)


class Message(Base):
    """
    One chat message, from the user or from the bot.

    Table: whatsapp_messages
    sender is "user" for inbound messages, anything else is bot/system.
    """
    __tablename__ = "whatsapp_messages"

    message_id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("whatsapp_userinfo.id"), nullable=False, index=True)
    content = Column(Text, nullable=True)
    sender = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, index=True)
    bucket_index = Column(Integer, nullable=True)


class PetDetail(Base):
    __tablename__ = "whatsapp_petdetails"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("whatsapp_userinfo.id"), nullable=False, index=True)
    petname = Column(String, nullable=True)
    pettype = Column(String, nullable=True)
    breed = Column(String, nullable=True)
    age = Column(String, nullable=True)
    petgender = Column(String, nullable=True)
    weight = Column(String, nullable=True)
    neutered = Column(Boolean, nullable=True)
    petdob = Column(Date, nullable=True)
    created_at = Column(DateTime, nullable=False)


class Consultation(Base):
    """
    A vet consultation request.

    Table: consultations
    Only the status endpoint mutates these rows; payment states are set by the
    payment collaborator.
    """
    __tablename__ = "consultations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("whatsapp_userinfo.id"), nullable=True, index=True)
    issue_category = Column(String, nullable=True)
    issue_description = Column(Text, nullable=True)
    preferred_time = Column(String, nullable=True)
    urgency = Column(String, nullable=True)
    status = Column(String, nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=True)
    appointment_date = Column(DateTime, nullable=True)
    vet_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, index=True)
    updated_at = Column(DateTime, nullable=True)


class Feedback(Base):
    """Table: user_feedback. Linked to users by phone string only."""
    __tablename__ = "user_feedback"

    id = Column(Integer, primary_key=True, index=True)
    user_phone = Column(String, nullable=True, index=True)
    feedback_type = Column(String, nullable=True)
    feedback_content = Column(Text, nullable=True)
    feedback_rating = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False)
