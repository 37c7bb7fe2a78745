import logging
from contextlib import asynccontextmanager, contextmanager
from datetime import date
from pathlib import Path
from typing import Annotated, Optional

from fastapi import FastAPI, Response, Request, Depends, status, Path as PathParam, Query
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.analytics import ActivityWindow, build_activity_report, build_user_report
from app.config import settings
from app.consultations import (
    apply_action,
    build_consultation_listing,
    build_consultation_stats,
    get_consultation,
    parse_action,
    parse_status_filter,
)
from app.errors import DashboardError, InvalidInputError, NotFoundError, UpstreamFailure
from app.logging_utils import setup_logging, RequestLoggingMiddleware, log_request_context
from app.metrics import get_metrics, get_metrics_content_type, record_consultation_transition, record_report_failure
from app.overview import build_overview, get_feedbacks
from app.schemas import (
    ApiResponse,
    ConsultationActionRequest,
    ConsultationActionResponse,
    ConsultationListResponse,
    ErrorResponse,
    FeedbackListResponse,
    HealthResponse,
    OverviewResponse,
    TablesResponse,
    ThreadListResponse,
)
from app.storage import init_db, dispose_db, check_db_health, get_db, list_tables
from app.threads import ThreadFilter, ThreadQuery, ThreadSort, build_conversation, build_thread_listing
from app.utils import naive_utc


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).parent / "static"

# Keeps offsets and ids inside the store's 64-bit integer range
MAX_OFFSET = 1_000_000
MAX_ID = 2**63 - 1

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid parameters"},
    500: {"model": ErrorResponse, "description": "Store unreachable or query failed"},
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: verify the connection pool
    - Shutdown: dispose of pooled connections
    """
    init_db()
    yield
    dispose_db()


app = FastAPI(
    title="Pet Care Dashboard API",
    description="Analytics and admin dashboard for the pet-care WhatsApp assistant",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")


# =============================================================================
# Error Handling
# =============================================================================

def _error_body(message: str, details: Optional[str]) -> dict:
    body = {"success": False, "error": message}
    if details and not settings.is_production:
        body["details"] = details
    return body


@app.exception_handler(DashboardError)
async def dashboard_error_handler(request: Request, exc: DashboardError) -> JSONResponse:
    details = str(exc.cause) if exc.cause is not None else None
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message, details))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    logger.warning(f"Rejected request parameters: {details}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body("Invalid request parameters", details),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body("Internal server error", str(exc)),
    )


@contextmanager
def report_errors(request: Request, report: str, failure_message: str):
    """Tag the request log with the report name and wrap store failures."""
    log_request_context(request, report=report)
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"{failure_message}: {e}")
        record_report_failure(report)
        raise UpstreamFailure(failure_message, cause=e)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Used by orchestrators to determine if the app needs to be restarted.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the store is reachable and every
    dashboard table exists. Otherwise returns 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Analytics Routes
# =============================================================================

@app.get("/api/dashboard/analytics", response_model=ApiResponse, responses=ERROR_RESPONSES)
async def activity_analytics(
    request: Request,
    start_date: Annotated[Optional[date], Query(description="First local date (YYYY-MM-DD)")] = None,
    end_date: Annotated[Optional[date], Query(description="Last local date, inclusive")] = None,
    days: Annotated[int, Query(ge=1, le=365, description="Trailing window when no dates are given")] = 30,
) -> ApiResponse:
    """
    Daily activity series with DAU, new/returning split and retention.

    An explicit start_date/end_date pair takes precedence over days.
    """
    if start_date and end_date and start_date > end_date:
        raise InvalidInputError("start_date must not be after end_date")

    offset = settings.TIMEZONE_OFFSET_MINUTES
    window = ActivityWindow.resolve(offset, start_date=start_date, end_date=end_date, days=days)
    logger.info(f"GET analytics: start={window.start}, end={window.end}, period={window.period_days}")

    with report_errors(request, "analytics", "Failed to fetch analytics data"):
        report = await build_activity_report(window, offset)
    return ApiResponse(data=report)


@app.get("/api/dashboard/analytics/users", response_model=ApiResponse, responses=ERROR_RESPONSES)
async def user_analytics(
    request: Request,
    range_days: Annotated[int, Query(alias="range", ge=1, le=365, description="Window in days")] = 30,
) -> ApiResponse:
    """Registrations, cohorts, geography, engagement tiers, onboarding and peak hours."""
    logger.info(f"GET user analytics: range={range_days}")
    with report_errors(request, "user_analytics", "Failed to fetch user analytics"):
        report = await build_user_report(range_days, settings.TIMEZONE_OFFSET_MINUTES)
    return ApiResponse(data=report)


@app.get("/api/dashboard/overview", response_model=OverviewResponse, responses=ERROR_RESPONSES)
async def overview(request: Request) -> OverviewResponse:
    """KPI tiles; update_interval tells the page how often to poll."""
    with report_errors(request, "overview", "Failed to fetch dashboard overview"):
        data = await build_overview(settings.TIMEZONE_OFFSET_MINUTES, settings.OVERVIEW_REFRESH_INTERVAL_MS)
    return OverviewResponse(data=data)


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/api/dashboard/threads", response_model=ThreadListResponse, responses=ERROR_RESPONSES)
async def list_threads(
    request: Request,
    limit: Annotated[int, Query(ge=1, le=200, description="Threads per page")] = 50,
    offset: Annotated[int, Query(ge=0, le=MAX_OFFSET, description="Threads to skip")] = 0,
    search: Annotated[str, Query(max_length=200, description="Substring of name, phone, email, last message or pet name")] = "",
    thread_filter: Annotated[ThreadFilter, Query(alias="filter")] = ThreadFilter.ALL,
    sort: Annotated[ThreadSort, Query()] = ThreadSort.RECENT,
) -> ThreadListResponse:
    """
    One thread per user (system accounts excluded), with the latest message,
    message counts and pet info. total ignores limit/offset.
    """
    params = ThreadQuery(limit=limit, offset=offset, search=search.strip(), filter=thread_filter, sort=sort)
    logger.info(f"GET threads: {params}")

    with report_errors(request, "threads", "Failed to fetch conversation threads"):
        data = await build_thread_listing(
            params, settings.TIMEZONE_OFFSET_MINUTES, settings.EXCLUDED_PHONE_PATTERN
        )
    return ThreadListResponse(data=data)


@app.get(
    "/api/dashboard/messages/{user_id}",
    response_model=ApiResponse,
    responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "User not found"}},
)
async def conversation(
    request: Request,
    user_id: Annotated[int, PathParam(le=MAX_ID)],
    limit: Annotated[int, Query(ge=1, le=500, description="Messages per page")] = 100,
    offset: Annotated[int, Query(ge=0, le=MAX_OFFSET, description="Messages to skip")] = 0,
) -> ApiResponse:
    """Profile, pet, messages (oldest first), conversation analytics and feedback."""
    with report_errors(request, "conversation", "Failed to fetch conversation"):
        data = await build_conversation(user_id, limit, offset)
    return ApiResponse(data=data)


# =============================================================================
# Consultation Routes
# =============================================================================

@app.get("/api/dashboard/consultations", response_model=ConsultationListResponse, responses=ERROR_RESPONSES)
async def list_consultations(
    request: Request,
    status_filter: Annotated[str, Query(alias="status", description="A consultation status, or 'all'")] = "all",
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0, le=MAX_OFFSET)] = 0,
) -> ConsultationListResponse:
    """Consultations newest first with requester and pet details."""
    status_value = parse_status_filter(status_filter)
    with report_errors(request, "consultations", "Failed to fetch consultations"):
        data = await build_consultation_listing(status_value, limit, offset)
    return ConsultationListResponse(data=data)


@app.get("/api/dashboard/consultations/stats", response_model=ApiResponse, responses=ERROR_RESPONSES)
async def consultation_stats(request: Request) -> ApiResponse:
    """Status counts, booking trends, category and urgency distributions."""
    with report_errors(request, "consultation_stats", "Failed to fetch consultation statistics"):
        data = await build_consultation_stats(settings.TIMEZONE_OFFSET_MINUTES)
    return ApiResponse(data=data)


@app.get(
    "/api/dashboard/consultations/{consultation_id}",
    response_model=ApiResponse,
    responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Consultation not found"}},
)
async def consultation_detail(
    request: Request,
    consultation_id: Annotated[int, PathParam(le=MAX_ID)],
    db: Session = Depends(get_db),
) -> ApiResponse:
    with report_errors(request, "consultation", "Failed to fetch consultation"):
        record = get_consultation(db, consultation_id)
    return ApiResponse(data=record)


@app.post(
    "/api/dashboard/consultations/{consultation_id}",
    response_model=ConsultationActionResponse,
    responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Consultation not found"}},
)
async def consultation_action(
    request: Request,
    consultation_id: Annotated[int, PathParam(le=MAX_ID)],
    body: ConsultationActionRequest,
    db: Session = Depends(get_db),
) -> ConsultationActionResponse:
    """
    Apply approve, reject, complete or update_notes.

    - 400 "Invalid action" for anything else
    - 400 "Invalid status transition" when the current status does not allow it
    - 404 when the consultation does not exist
    """
    log_request_context(request, consultation_id=consultation_id, action=body.action)

    try:
        action = parse_action(body.action)
    except InvalidInputError:
        record_consultation_transition("unknown", "invalid_action")
        log_request_context(request, result="invalid_action")
        raise

    try:
        record = apply_action(
            db,
            consultation_id,
            action,
            vet_notes=body.vet_notes,
            appointment_date=naive_utc(body.appointment_date),
            enforce_transitions=settings.ENFORCE_CONSULTATION_TRANSITIONS,
        )
    except NotFoundError:
        record_consultation_transition(action.value, "not_found")
        log_request_context(request, result="not_found")
        raise
    except InvalidInputError:
        record_consultation_transition(action.value, "invalid_transition")
        log_request_context(request, result="invalid_transition")
        raise
    except SQLAlchemyError as e:
        logger.error(f"Failed to update consultation {consultation_id}: {e}")
        record_consultation_transition(action.value, "error")
        log_request_context(request, result="error")
        raise UpstreamFailure("Failed to update consultation", cause=e)

    record_consultation_transition(action.value, "ok")
    log_request_context(request, result="ok")
    return ConsultationActionResponse(data=record, message=f"Consultation {action.value} successfully")


# =============================================================================
# Feedback & Debug Routes
# =============================================================================

@app.get("/api/feedbacks", response_model=FeedbackListResponse, responses=ERROR_RESPONSES)
async def feedbacks(
    request: Request,
    feedback_type: Annotated[str, Query(alias="type", description="Feedback type, or 'all'")] = "user_feedback",
    db: Session = Depends(get_db),
) -> FeedbackListResponse:
    """Feedback newest first. Only user_feedback rows unless type is given."""
    with report_errors(request, "feedbacks", "Failed to fetch feedbacks"):
        rows = get_feedbacks(db, None if feedback_type == "all" else feedback_type)
    return FeedbackListResponse(data=rows, total=len(rows))


@app.get(
    "/api/debug/tables",
    response_model=TablesResponse,
    responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Disabled in production"}},
)
async def debug_tables(request: Request) -> TablesResponse:
    """Table names in the connected store. Not available in production."""
    if settings.is_production:
        raise NotFoundError("Not found")
    with report_errors(request, "debug_tables", "Failed to fetch tables"):
        tables = list_tables()
    return TablesResponse(data={"tables": tables})


# =============================================================================
# Pages
# =============================================================================

@app.get("/", include_in_schema=False)
async def index() -> RedirectResponse:
    return RedirectResponse(url="/dashboard")


@app.get("/dashboard", include_in_schema=False)
async def dashboard_page() -> FileResponse:
    return FileResponse(STATIC_DIR / "dashboard.html")


@app.get("/dashboard/conversation/{user_id}", include_in_schema=False)
async def conversation_page(user_id: int) -> FileResponse:
    # The page reads the id from its own URL
    return FileResponse(STATIC_DIR / "conversation.html")


@app.get("/consultations", include_in_schema=False)
async def consultations_page() -> FileResponse:
    return FileResponse(STATIC_DIR / "consultations.html")


@app.get("/feedbacks", include_in_schema=False)
async def feedbacks_page() -> FileResponse:
    return FileResponse(STATIC_DIR / "feedbacks.html")


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total: Total HTTP requests by method, path, status
    - report_failures_total: Failed reports by name
    - consultation_transitions_total: Transition attempts by action and result
    - request_latency_seconds: Request latency histogram
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
