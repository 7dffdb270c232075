"""FastAPI dependencies for request context.

Authentication is handled upstream; the gateway forwards the acting user and
organization as headers. Every organization-scoped route validates that the
organization exists before any engine is built for it.
"""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import Organization
from .database import get_session, get_session_factory

logger = logging.getLogger(__name__)


class ActorContext:
    """The acting user and the organization every operation is scoped to."""

    def __init__(self, organization_id: UUID, user_id: UUID):
        self.organization_id = organization_id
        self.user_id = user_id

    @property
    def id(self) -> UUID:
        return self.user_id


def _parse_uuid_header(value: str | None, name: str) -> UUID:
    if not value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{name} header required",
        )
    try:
        return UUID(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {name} format",
        )


async def require_org_context(
    session: Annotated[AsyncSession, Depends(get_session)],
    x_organization_id: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
) -> ActorContext:
    """Require organization and user headers and check the organization exists."""
    org_id = _parse_uuid_header(x_organization_id, "X-Organization-ID")
    user_id = _parse_uuid_header(x_user_id, "X-User-ID")

    result = await session.execute(
        select(Organization.id).where(Organization.id == org_id)
    )
    if result.scalar_one_or_none() is None:
        logger.warning(f"Request for unknown organization {org_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unknown organization",
        )

    return ActorContext(organization_id=org_id, user_id=user_id)


# Type aliases for cleaner dependency injection
SessionDep = Annotated[AsyncSession, Depends(get_session)]
SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
OrgContextDep = Annotated[ActorContext, Depends(require_org_context)]
