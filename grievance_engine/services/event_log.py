"""Event log: append-only grievance history and its queries."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import GrievanceNotFoundError
from ..models import Grievance, GrievanceEvent, GrievanceEventType, utcnow


logger = logging.getLogger(__name__)


@dataclass
class EventLogFilters:
    """Optional filters for event queries; unset fields match everything."""

    start_date: datetime | None = None
    end_date: datetime | None = None
    event_types: list[GrievanceEventType] = field(default_factory=list)
    user_id: UUID | None = None
    grievance_id: UUID | None = None


@dataclass
class EventPage:
    items: Sequence[GrievanceEvent]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size


@dataclass
class EventStats:
    total_events: int
    recent_events: int
    window_days: int
    by_type: dict[str, int]


class EventLog:
    """Append and query grievance events for one organization."""

    def __init__(self, session: AsyncSession, organization_id: UUID):
        self.session = session
        self.organization_id = organization_id

    async def append(
        self,
        grievance: Grievance | UUID,
        event_type: GrievanceEventType,
        previous_value: str | None,
        new_value: str | None,
        actor_id: UUID,
    ) -> GrievanceEvent:
        """
        Record one event in the current transaction.

        The entry is added to the session but not flushed, so it commits or
        rolls back together with the mutation it describes.
        """
        if isinstance(grievance, Grievance):
            if grievance.organization_id != self.organization_id:
                raise GrievanceNotFoundError(f"Grievance {grievance.id} not found")
            grievance_id = grievance.id
        else:
            grievance_id = grievance
            result = await self.session.execute(
                select(Grievance.id).where(
                    Grievance.id == grievance_id,
                    Grievance.organization_id == self.organization_id,
                )
            )
            if result.scalar_one_or_none() is None:
                raise GrievanceNotFoundError(f"Grievance {grievance_id} not found")

        entry = GrievanceEvent(
            organization_id=self.organization_id,
            grievance_id=grievance_id,
            event_type=event_type,
            user_id=actor_id,
            previous_value=previous_value,
            new_value=new_value,
            created_at=utcnow(),
        )
        self.session.add(entry)
        logger.debug(f"Event {event_type.value} recorded for grievance {grievance_id}")
        return entry

    async def query(
        self,
        filters: EventLogFilters | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> EventPage:
        """Query events with filters, newest first."""
        filters = filters or EventLogFilters()
        query = select(GrievanceEvent).where(
            GrievanceEvent.organization_id == self.organization_id
        )

        if filters.user_id:
            query = query.where(GrievanceEvent.user_id == filters.user_id)
        if filters.grievance_id:
            query = query.where(GrievanceEvent.grievance_id == filters.grievance_id)
        if filters.event_types:
            query = query.where(GrievanceEvent.event_type.in_(filters.event_types))
        if filters.start_date:
            query = query.where(GrievanceEvent.created_at >= filters.start_date)
        if filters.end_date:
            query = query.where(GrievanceEvent.created_at <= filters.end_date)

        # Count total
        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.session.execute(count_query)).scalar_one()

        # Get results
        offset = (page - 1) * page_size
        query = query.order_by(GrievanceEvent.created_at.desc()).limit(page_size).offset(offset)
        result = await self.session.execute(query)

        return EventPage(
            items=result.scalars().all(),
            total=total,
            page=page,
            page_size=page_size,
        )

    async def summarize(
        self,
        window_days: int = 30,
        now: datetime | None = None,
    ) -> EventStats:
        """Totals for the organization: overall, within the window, and per type."""
        now = now or utcnow()
        scope = GrievanceEvent.organization_id == self.organization_id

        total = (
            await self.session.execute(select(func.count(GrievanceEvent.id)).where(scope))
        ).scalar_one()

        recent = (
            await self.session.execute(
                select(func.count(GrievanceEvent.id)).where(
                    scope,
                    GrievanceEvent.created_at >= now - timedelta(days=window_days),
                )
            )
        ).scalar_one()

        by_type_result = await self.session.execute(
            select(GrievanceEvent.event_type, func.count(GrievanceEvent.id))
            .where(scope)
            .group_by(GrievanceEvent.event_type)
        )
        by_type = {
            GrievanceEventType(event_type).value: count
            for event_type, count in by_type_result.all()
        }

        return EventStats(
            total_events=total,
            recent_events=recent,
            window_days=window_days,
            by_type=by_type,
        )
