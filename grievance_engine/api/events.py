"""API routes for the grievance event log."""

from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel

from ..core.config import get_settings
from ..core.dependencies import OrgContextDep, SessionDep
from ..core.exceptions import GrievanceEngineError, ValidationError
from ..models import GrievanceEventType
from ..schemas import EngineBaseModel, PaginatedResponse
from ..services.event_log import EventLog, EventLogFilters
from .errors import to_http_exception

router = APIRouter(tags=["events"])

# Event types other services may record; lifecycle events are written by the engine only
EXTERNAL_EVENT_TYPES = {
    GrievanceEventType.CATEGORY_CHANGED,
    GrievanceEventType.AGREEMENT_CHANGED,
    GrievanceEventType.EVIDENCE_ADDED,
    GrievanceEventType.EVIDENCE_REMOVED,
    GrievanceEventType.COST_UPDATED,
    GrievanceEventType.STATEMENT_UPDATED,
    GrievanceEventType.ASSIGNEE_CHANGED,
    GrievanceEventType.TIMELINE_ENTRY_ADDED,
}


class EventResponse(EngineBaseModel):
    id: UUID
    grievance_id: UUID
    event_type: GrievanceEventType
    user_id: UUID
    previous_value: str | None = None
    new_value: str | None = None
    created_at: datetime


class PaginatedEventsResponse(PaginatedResponse):
    items: list[EventResponse]


class EventStatsResponse(BaseModel):
    total_events: int
    recent_events: int
    window_days: int
    by_type: dict[str, int]


class AppendEventRequest(BaseModel):
    event_type: GrievanceEventType
    previous_value: str | None = None
    new_value: str | None = None


def get_event_log(session: SessionDep, current_user: OrgContextDep) -> EventLog:
    return EventLog(session, current_user.organization_id)


EventLogDep = Annotated[EventLog, Depends(get_event_log)]


@router.get("/events", response_model=PaginatedEventsResponse)
async def query_events(
    event_log: EventLogDep,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    event_type: list[GrievanceEventType] | None = Query(default=None),
    user_id: UUID | None = None,
    grievance_id: UUID | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
):
    """Query the event log with filters, newest first."""
    result = await event_log.query(
        EventLogFilters(
            start_date=start_date,
            end_date=end_date,
            event_types=event_type or [],
            user_id=user_id,
            grievance_id=grievance_id,
        ),
        page=page,
        page_size=page_size,
    )
    return PaginatedEventsResponse.create(
        items=[EventResponse.model_validate(e) for e in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
    )


@router.get("/events/stats", response_model=EventStatsResponse)
async def get_event_stats(event_log: EventLogDep):
    stats = await event_log.summarize(window_days=get_settings().event_stats_window_days)
    return EventStatsResponse(
        total_events=stats.total_events,
        recent_events=stats.recent_events,
        window_days=stats.window_days,
        by_type=stats.by_type,
    )


@router.post(
    "/grievances/{grievance_id}/events",
    response_model=EventResponse,
    status_code=status.HTTP_201_CREATED,
)
async def append_event(
    grievance_id: UUID,
    request: AppendEventRequest,
    current_user: OrgContextDep,
    event_log: EventLogDep,
):
    """Record a change made elsewhere (evidence, costs, assignee, ...) on a grievance."""
    if request.event_type not in EXTERNAL_EVENT_TYPES:
        raise to_http_exception(
            ValidationError(f"{request.event_type.value} events are recorded by the grievance engine")
        )
    try:
        entry = await event_log.append(
            grievance_id,
            request.event_type,
            request.previous_value,
            request.new_value,
            current_user.id,
        )
    except GrievanceEngineError as e:
        raise to_http_exception(e)
    await event_log.session.flush()
    return EventResponse.model_validate(entry)
