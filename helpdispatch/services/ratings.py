"""Ratings: create/update/delete with the helper aggregate kept in step.

Every write locks the ratee row, re-aggregates ``AVG(score)`` over all of the
ratee's ratings and stores the result in the same transaction, so concurrent
ratings for one helper never lose an update.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from helpdispatch.config import settings
from helpdispatch.db_models import HelpRequest, Match, MatchStatus, Rating, User
from helpdispatch.errors import (
    AuthorizationError,
    DuplicateRatingError,
    InvalidScoreError,
    InvalidStateError,
    NotFoundError,
)
from helpdispatch.utils import iso, status_str

logger = logging.getLogger("helpdispatch.ratings")

MIN_SCORE = 1
MAX_SCORE = 5


def _check_score(score) -> int:
    if isinstance(score, bool) or not isinstance(score, int):
        raise InvalidScoreError("Score must be an integer between 1 and 5")
    if not MIN_SCORE <= score <= MAX_SCORE:
        raise InvalidScoreError(f"Score must be between {MIN_SCORE} and {MAX_SCORE}, got {score}")
    return score


def _rating_to_dict(r: Rating) -> dict:
    return {
        "id": r.id,
        "match_id": r.match_id,
        "rater_id": r.rater_id,
        "ratee_id": r.ratee_id,
        "score": r.score,
        "comment": r.comment,
        "created_at": iso(r.created_at),
        "updated_at": iso(r.updated_at),
    }


async def _lock_user(session: AsyncSession, user_id: int) -> User | None:
    result = await session.execute(
        select(User)
        .where(User.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def recompute_rating(session: AsyncSession, ratee_id: int) -> float:
    """Store the ratee's mean score (default rating when none remain). Does not commit."""
    ratee = await _lock_user(session, ratee_id)
    if ratee is None:
        raise NotFoundError(f"User {ratee_id} not found")
    result = await session.execute(
        select(func.avg(Rating.score), func.count(Rating.id)).where(Rating.ratee_id == ratee_id)
    )
    avg, count = result.one()
    ratee.rating = round(float(avg), 2) if count else settings.default_helper_rating
    session.add(ratee)
    await session.flush()
    logger.debug("User %s rating now %.2f over %d ratings", ratee_id, ratee.rating, count)
    return ratee.rating


async def _owned_rating(session: AsyncSession, rating_id: int, rater_id: int) -> Rating:
    rating = await session.get(Rating, rating_id)
    if rating is None:
        raise NotFoundError(f"Rating {rating_id} not found")
    if rating.rater_id != rater_id:
        raise AuthorizationError("Not your rating")
    return rating


async def create_rating(
    session: AsyncSession,
    match_id: int,
    rater_id: int,
    score: int,
    comment: str | None = None,
) -> dict:
    _check_score(score)

    result = await session.execute(
        select(Match, HelpRequest)
        .join(HelpRequest, HelpRequest.id == Match.request_id)
        .where(Match.id == match_id)
    )
    row = result.first()
    if row is None:
        raise NotFoundError(f"Match {match_id} not found")
    match, request = row
    if request.requester_id != rater_id:
        raise AuthorizationError("Only the requester can rate this match")
    if status_str(match.status) != MatchStatus.completed.value:
        raise InvalidStateError(f"Match {match_id} is {status_str(match.status)}, not completed")

    existing = await session.execute(
        select(Rating.id).where(Rating.match_id == match_id, Rating.rater_id == rater_id)
    )
    if existing.first() is not None:
        raise DuplicateRatingError(f"Match {match_id} is already rated")

    rating = Rating(
        match_id=match_id,
        rater_id=rater_id,
        ratee_id=match.helper_id,
        score=score,
        comment=comment,
    )
    session.add(rating)
    try:
        await session.flush()
    except IntegrityError as exc:
        await session.rollback()
        raise DuplicateRatingError(f"Match {match_id} is already rated") from exc

    new_rating = await recompute_rating(session, match.helper_id)
    await session.commit()
    logger.info("User %s rated match %s with %d", rater_id, match_id, score)

    out = _rating_to_dict(rating)
    out["ratee_rating"] = new_rating
    return out


async def update_rating(
    session: AsyncSession,
    rating_id: int,
    rater_id: int,
    score: int | None = None,
    comment: str | None = None,
) -> dict:
    rating = await _owned_rating(session, rating_id, rater_id)
    if score is not None:
        rating.score = _check_score(score)
    if comment is not None:
        rating.comment = comment
    rating.updated_at = datetime.now(UTC)
    session.add(rating)
    await session.flush()

    new_rating = await recompute_rating(session, rating.ratee_id)
    await session.commit()
    logger.info("Rating %s updated by user %s", rating_id, rater_id)

    out = _rating_to_dict(rating)
    out["ratee_rating"] = new_rating
    return out


async def delete_rating(session: AsyncSession, rating_id: int, rater_id: int) -> dict:
    rating = await _owned_rating(session, rating_id, rater_id)
    ratee_id = rating.ratee_id
    await session.delete(rating)
    await session.flush()

    new_rating = await recompute_rating(session, ratee_id)
    await session.commit()
    logger.info("Rating %s deleted by user %s", rating_id, rater_id)
    return {"id": rating_id, "deleted": True, "ratee_id": ratee_id, "ratee_rating": new_rating}


async def get_helper_ratings(
    session: AsyncSession, helper_id: int, limit: int = 20, offset: int = 0
) -> dict:
    helper = await session.get(User, helper_id)
    if helper is None:
        raise NotFoundError(f"Helper {helper_id} not found")

    result = await session.execute(
        select(Rating)
        .where(Rating.ratee_id == helper_id)
        .order_by(Rating.created_at.desc(), Rating.id.desc())  # type: ignore[union-attr]
        .offset(offset)
        .limit(limit)
    )
    ratings = result.scalars().all()

    dist_result = await session.execute(
        select(Rating.score, func.count(Rating.id))
        .where(Rating.ratee_id == helper_id)
        .group_by(Rating.score)
    )
    distribution = {str(s): 0 for s in range(MIN_SCORE, MAX_SCORE + 1)}
    total = 0
    weighted = 0
    for score, count in dist_result.all():
        distribution[str(score)] = count
        total += count
        weighted += score * count

    return {
        "helper_id": helper_id,
        "name": helper.display_name,
        "ratings": [_rating_to_dict(r) for r in ratings],
        "stats": {
            "average": round(weighted / total, 2) if total else settings.default_helper_rating,
            "total": total,
            "distribution": distribution,
        },
        "limit": limit,
        "offset": offset,
    }


async def list_pending_ratings(session: AsyncSession, requester_id: int) -> list[dict]:
    """Completed matches on the requester's requests that they have not rated yet."""
    rated = select(Rating.match_id).where(Rating.rater_id == requester_id)
    result = await session.execute(
        select(Match, HelpRequest, User)
        .join(HelpRequest, HelpRequest.id == Match.request_id)
        .join(User, User.id == Match.helper_id)
        .where(
            HelpRequest.requester_id == requester_id,
            Match.status == MatchStatus.completed,
            Match.id.not_in(rated),  # type: ignore[union-attr]
        )
        .order_by(Match.completed_at.desc())  # type: ignore[union-attr]
    )
    return [
        {
            "match_id": match.id,
            "request_id": request.id,
            "title": request.title,
            "category": request.category,
            "completed_at": iso(match.completed_at),
            "helper": {"id": helper.id, "name": helper.display_name, "rating": helper.rating},
        }
        for match, request, helper in result.all()
    ]


async def list_my_ratings(session: AsyncSession, user_id: int) -> dict:
    newest_first = Rating.created_at.desc()  # type: ignore[union-attr]
    given = await session.execute(
        select(Rating).where(Rating.rater_id == user_id).order_by(newest_first)
    )
    received = await session.execute(
        select(Rating).where(Rating.ratee_id == user_id).order_by(newest_first)
    )
    return {
        "given": [_rating_to_dict(r) for r in given.scalars().all()],
        "received": [_rating_to_dict(r) for r in received.scalars().all()],
    }
