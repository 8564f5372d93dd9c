"""Helper selection for a pending request.

Policy, in order: fewest active matches, then highest rating, then a uniform
random pick among whatever is still tied.
"""

from __future__ import annotations

import logging
import random
from typing import NamedTuple

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from helpdispatch.db_models import HELPER_ROLES, HelpRequest, Match, MatchStatus, User
from helpdispatch.utils import status_str

logger = logging.getLogger("helpdispatch.matching")


class Candidate(NamedTuple):
    helper: User
    active_matches: int


def is_eligible(user: User | None) -> bool:
    if user is None or not user.is_active:
        return False
    return status_str(user.role) in {r.value for r in HELPER_ROLES}


async def eligible_helpers(session: AsyncSession, exclude_id: int | None = None) -> list[Candidate]:
    """Active volunteers and caregivers with their current active-match count."""
    load = (
        select(Match.helper_id, func.count(Match.id).label("active_matches"))
        .where(Match.status == MatchStatus.active)
        .group_by(Match.helper_id)
        .subquery()
    )
    query = (
        select(User, func.coalesce(load.c.active_matches, 0))
        .outerjoin(load, load.c.helper_id == User.id)
        .where(User.role.in_(HELPER_ROLES), User.is_active.is_(True))  # type: ignore[union-attr]
    )
    if exclude_id is not None:
        query = query.where(User.id != exclude_id)
    result = await session.execute(query)
    return [Candidate(helper, int(count)) for helper, count in result.all()]


async def find_best_helper(
    session: AsyncSession,
    request: HelpRequest,
    rng: random.Random | None = None,
) -> User | None:
    # A requester who is also a helper never gets their own request.
    candidates = await eligible_helpers(session, exclude_id=request.requester_id)
    if not candidates:
        return None

    def _key(c: Candidate) -> tuple[int, float]:
        return (c.active_matches, -c.helper.rating)

    best = min(_key(c) for c in candidates)
    tied = [c for c in candidates if _key(c) == best]
    chosen = (rng or random).choice(tied)
    logger.debug(
        "Request %s: %d candidates, %d tied at load=%d rating=%.2f, chose helper %s",
        request.id,
        len(candidates),
        len(tied),
        chosen.active_matches,
        chosen.helper.rating,
        chosen.helper.id,
    )
    return chosen.helper
