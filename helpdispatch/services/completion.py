"""Match completion: active -> completed, request matched -> fulfilled."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from helpdispatch.db_models import HelpRequest, Match, User
from helpdispatch.errors import (
    AlreadyCompletedError,
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
)
from helpdispatch.utils import iso, status_str

logger = logging.getLogger("helpdispatch.completion")


async def complete_match(session: AsyncSession, match_id: int, actor_id: int) -> dict:
    """Complete a match on behalf of its helper or the request's requester.

    Exactly one of several concurrent calls succeeds; the others get
    AlreadyCompletedError. Only the requester is prompted to rate.
    """
    result = await session.execute(
        select(Match, HelpRequest)
        .join(HelpRequest, HelpRequest.id == Match.request_id)
        .where(Match.id == match_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    row = result.first()
    if row is None:
        raise NotFoundError(f"Match {match_id} not found")
    match, request = row

    is_requester = actor_id == request.requester_id
    if actor_id != match.helper_id and not is_requester:
        raise AuthorizationError("Only the helper or the requester can complete this match")

    status = status_str(match.status)
    if status == "completed":
        raise AlreadyCompletedError(f"Match {match_id} is already completed")
    if status != "active":
        raise InvalidStateError(f"Match {match_id} is {status}, not active")

    now = datetime.now(UTC)
    done = await session.execute(
        text(
            "UPDATE matches SET status = 'completed', completed_at = :now "
            "WHERE id = :id AND status = 'active'"
        ),
        {"now": now, "id": match_id},
    )
    if done.rowcount == 0:
        raise AlreadyCompletedError(f"Match {match_id} is already completed")

    await session.execute(
        text("UPDATE requests SET status = 'fulfilled' WHERE id = :id AND status = 'matched'"),
        {"id": request.id},
    )
    await session.commit()
    await session.refresh(match)

    helper = await session.get(User, match.helper_id)
    logger.info("Match %s completed by user %s (request %s)", match_id, actor_id, request.id)

    return {
        "match_id": match.id,
        "request_id": request.id,
        "status": "completed",
        "request_status": "fulfilled",
        "completed_at": iso(match.completed_at),
        "should_prompt_rating": is_requester,
        "helper": {
            "id": match.helper_id,
            "name": helper.display_name if helper else None,
            "rating": helper.rating if helper else None,
        },
    }
