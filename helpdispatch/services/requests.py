"""Request intake, lookup, cancellation and re-enqueueing."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from aio_pika.exceptions import AMQPError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from helpdispatch.db_models import HelpRequest, Match, RequestStatus, Urgency, User
from helpdispatch.errors import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    QueueUnavailableError,
)
from helpdispatch.services.dispatch import DispatchPublisher
from helpdispatch.utils import iso, status_str

logger = logging.getLogger("helpdispatch.requests")


def _request_to_dict(r: HelpRequest, match: Match | None = None) -> dict:
    out = {
        "id": r.id,
        "requester_id": r.requester_id,
        "title": r.title,
        "category": r.category,
        "description": r.description,
        "urgency": status_str(r.urgency),
        "status": status_str(r.status),
        "dispatched_at": iso(r.dispatched_at),
        "created_at": iso(r.created_at),
        "match": None,
    }
    if match is not None:
        out["match"] = {
            "id": match.id,
            "helper_id": match.helper_id,
            "status": status_str(match.status),
            "matched_at": iso(match.matched_at),
            "completed_at": iso(match.completed_at),
        }
    return out


async def _latest_match(session: AsyncSession, request_id: int) -> Match | None:
    result = await session.execute(
        select(Match)
        .where(Match.request_id == request_id)
        .order_by(Match.matched_at.desc(), Match.id.desc())  # type: ignore[union-attr]
        .limit(1)
    )
    return result.scalar_one_or_none()


async def enqueue_dispatch(
    session: AsyncSession, publisher: DispatchPublisher, request: HelpRequest
) -> bool:
    """Publish a dispatch message for ``request``; stamp ``dispatched_at`` on success.

    Broker trouble is logged and reported as False. The request stays pending
    and unstamped, so the re-enqueue sweep retries it.
    """
    try:
        await publisher.publish(request)
    except (QueueUnavailableError, AMQPError) as exc:
        logger.warning("Could not enqueue request %s: %s", request.id, exc)
        return False

    request.dispatched_at = datetime.now(UTC)
    session.add(request)
    await session.commit()
    return True


async def create_request(
    session: AsyncSession,
    publisher: DispatchPublisher,
    requester_id: int,
    category: str,
    description: str,
    urgency: Urgency | str = Urgency.low,
    title: str | None = None,
) -> dict:
    requester = await session.get(User, requester_id)
    if requester is None or not requester.is_active:
        raise NotFoundError(f"User {requester_id} not found")

    request = HelpRequest(
        requester_id=requester_id,
        title=title,
        category=category,
        description=description,
        urgency=Urgency(urgency),
        status=RequestStatus.pending,
    )
    session.add(request)
    await session.commit()
    await session.refresh(request)
    logger.info(
        "Request %s created by user %s (%s)", request.id, requester_id, request.urgency.value
    )

    await enqueue_dispatch(session, publisher, request)
    return _request_to_dict(request)


async def get_request(session: AsyncSession, request_id: int) -> dict:
    request = await session.get(HelpRequest, request_id)
    if request is None:
        raise NotFoundError(f"Request {request_id} not found")
    return _request_to_dict(request, await _latest_match(session, request_id))


async def cancel_request(session: AsyncSession, request_id: int, actor_id: int) -> dict:
    """Requester cancels a pending or matched request; its active match is cancelled too."""
    result = await session.execute(
        select(HelpRequest)
        .where(HelpRequest.id == request_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    request = result.scalar_one_or_none()
    if request is None:
        raise NotFoundError(f"Request {request_id} not found")
    if request.requester_id != actor_id:
        raise AuthorizationError("Not your request")

    cancelled = await session.execute(
        text(
            "UPDATE requests SET status = 'cancelled' "
            "WHERE id = :id AND status IN ('pending', 'matched')"
        ),
        {"id": request_id},
    )
    if cancelled.rowcount == 0:
        status = status_str(request.status)
        raise InvalidStateError(f"Request {request_id} is {status}, can only cancel open requests")

    await session.execute(
        text(
            "UPDATE matches SET status = 'cancelled' "
            "WHERE request_id = :id AND status = 'active'"
        ),
        {"id": request_id},
    )
    await session.commit()
    await session.refresh(request)
    logger.info("Request %s cancelled by user %s", request_id, actor_id)
    return _request_to_dict(request, await _latest_match(session, request_id))


async def redispatch_unqueued(
    session: AsyncSession,
    publisher: DispatchPublisher,
    grace_seconds: int,
    limit: int = 100,
) -> int:
    """Re-publish pending requests whose initial enqueue never went through."""
    cutoff = datetime.now(UTC) - timedelta(seconds=grace_seconds)
    result = await session.execute(
        select(HelpRequest)
        .where(
            HelpRequest.status == RequestStatus.pending,
            HelpRequest.dispatched_at.is_(None),  # type: ignore[union-attr]
            HelpRequest.created_at < cutoff,
        )
        .order_by(HelpRequest.created_at)
        .limit(limit)
    )
    count = 0
    for request in result.scalars().all():
        if not await enqueue_dispatch(session, publisher, request):
            # broker still down, leave the rest for the next sweep
            break
        count += 1
    return count
