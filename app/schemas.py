"""
Pydantic schemas for request/response validation.

This module contains:
- The response envelope shared by every /api route
- Typed payloads for the flat reports (overview, feedback, pagination)
- The consultation action request body
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Envelope
# =============================================================================

class ApiResponse(BaseModel):
    """Success envelope: ``{"success": true, "data": ...}``."""
    success: bool = Field(default=True, description="Always true for 2xx responses")
    data: Any = Field(..., description="Report payload")


class ErrorResponse(BaseModel):
    """
    Error envelope.

    details carries the underlying error message and is only present
    outside production.
    """
    success: bool = Field(default=False)
    error: str = Field(..., description="Human-readable error")
    details: Optional[str] = Field(None, description="Underlying error (non-production only)")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# Report Payloads
# =============================================================================

class Pagination(BaseModel):
    total: int = Field(..., ge=0, description="Rows matching the filters, ignoring limit/offset")
    offset: int = Field(..., ge=0)
    limit: int = Field(..., ge=1)
    has_more: bool


class OverviewData(BaseModel):
    """KPI tiles for the dashboard home page."""
    total_users: int
    active_users_today: int
    active_now: int = Field(..., description="Distinct users messaging in the last 5 minutes")
    active_last_hour: int
    total_messages: int
    total_petdetails: int
    messages_today: int
    messages_per_user_today: float
    new_users_today: int
    user_growth_rate: float = Field(..., description="Day-over-day new user growth, percent")
    message_growth_rate: float
    onboarding_completion_rate: float
    total_pets: int
    pets_added_today: int
    total_feedback: int = Field(..., description="Feedback rows in the last 7 days")
    satisfaction_rate: float = Field(..., description="Share of last-week feedback rated 2 or higher")
    feedback_today: int
    peak_hour: Optional[int] = Field(None, ge=0, le=23, description="Busiest local hour over 30 days")
    peak_hour_messages: int
    last_updated: str
    update_interval: int = Field(..., description="Client polling interval in milliseconds")


class OverviewResponse(ApiResponse):
    data: OverviewData


class FeedbackItem(BaseModel):
    id: str
    phone: Optional[str] = None
    type: Optional[str] = None
    content: Optional[str] = None
    rating: Optional[int] = None
    createdAt: Optional[str] = None


class FeedbackListResponse(ApiResponse):
    data: list[FeedbackItem] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class ThreadListData(BaseModel):
    threads: list[dict[str, Any]] = Field(default_factory=list)
    pagination: Pagination
    filters: dict[str, str]


class ThreadListResponse(ApiResponse):
    data: ThreadListData


class ConsultationListData(BaseModel):
    consultations: list[dict[str, Any]] = Field(default_factory=list)
    pagination: Pagination


class ConsultationListResponse(ApiResponse):
    data: ConsultationListData


class ConsultationActionResponse(ApiResponse):
    data: dict[str, Any]
    message: str = Field(..., description='e.g. "Consultation approve successfully"')


class TablesData(BaseModel):
    tables: list[str]


class TablesResponse(ApiResponse):
    data: TablesData


# =============================================================================
# Request Models
# =============================================================================

class ConsultationActionRequest(BaseModel):
    """
    Body for POST /api/dashboard/consultations/{id}.

    action is validated against the known actions by the route so an unknown
    value yields the "Invalid action" envelope rather than a schema error.
    """
    action: str = Field(..., description="approve, reject, complete or update_notes")
    vet_notes: Optional[str] = Field(None, alias="vetNotes", description="Notes written by the vet")
    appointment_date: Optional[datetime] = Field(
        None,
        alias="appointmentDate",
        description="Appointment time (approve only); stored as null when absent"
    )

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "examples": [
                {
                    "action": "approve",
                    "vetNotes": "Bring vaccination records",
                    "appointmentDate": "2025-01-15T10:00:00Z",
                }
            ]
        }
    }
