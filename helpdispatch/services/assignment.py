"""Transactional assignment of a helper to a request."""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from helpdispatch.db_models import HelpRequest, Match, MatchStatus, User
from helpdispatch.errors import ConflictError, InvalidStateError, NotFoundError
from helpdispatch.services.matching import is_eligible
from helpdispatch.utils import iso, status_str

logger = logging.getLogger("helpdispatch.assignment")


async def _lock_request(session: AsyncSession, request_id: int) -> HelpRequest | None:
    result = await session.execute(
        select(HelpRequest)
        .where(HelpRequest.id == request_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def has_active_match(session: AsyncSession, request_id: int) -> bool:
    result = await session.execute(
        select(Match.id).where(Match.request_id == request_id, Match.status == MatchStatus.active)
    )
    return result.first() is not None


async def assign_helper(session: AsyncSession, request_id: int, helper_id: int) -> dict:
    """Match ``helper_id`` to a pending request in one transaction.

    The request row is locked, re-checked for an existing active match and
    flipped ``pending -> matched`` with a conditional UPDATE before the Match
    row is inserted. Losing a race to another dispatcher raises ConflictError,
    which callers treat as retryable. Nothing is written on any failure.
    """
    try:
        request = await _lock_request(session, request_id)
        if request is None:
            raise NotFoundError(f"Request {request_id} not found")
        status = status_str(request.status)
        if status != "pending":
            raise ConflictError(f"Request {request_id} is {status}, not pending")
        if await has_active_match(session, request_id):
            raise ConflictError(f"Request {request_id} already has an active match")

        helper = await session.get(User, helper_id)
        if helper is None:
            raise NotFoundError(f"Helper {helper_id} not found")
        if not is_eligible(helper):
            raise InvalidStateError(f"User {helper_id} is not an active helper")
        if helper.id == request.requester_id:
            raise InvalidStateError("A requester cannot help with their own request")

        # Atomic status transition, also the guard on backends without row locks
        claim = await session.execute(
            text("UPDATE requests SET status = 'matched' WHERE id = :id AND status = 'pending'"),
            {"id": request_id},
        )
        if claim.rowcount == 0:
            raise ConflictError(f"Request {request_id} was matched concurrently")

        match = Match(request_id=request_id, helper_id=helper_id, status=MatchStatus.active)
        session.add(match)
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError(f"Request {request_id} already has an active match") from exc

    logger.info("Assigned helper %s to request %s (match %s)", helper_id, request_id, match.id)
    return {
        "match_id": match.id,
        "request_id": request_id,
        "helper_id": helper_id,
        "status": "active",
        "matched_at": iso(match.matched_at),
    }
