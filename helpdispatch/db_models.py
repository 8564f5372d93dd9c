"""SQLModel table definitions for helpdispatch."""

from __future__ import annotations

import enum
from datetime import UTC, datetime

from sqlalchemy import DateTime, Index, text
from sqlmodel import Field, SQLModel


class UserRole(str, enum.Enum):
    senior = "senior"
    volunteer = "volunteer"
    caregiver = "caregiver"
    admin = "admin"


HELPER_ROLES = (UserRole.volunteer, UserRole.caregiver)


class Urgency(str, enum.Enum):
    urgent = "urgent"
    high = "high"
    medium = "medium"
    low = "low"


class RequestStatus(str, enum.Enum):
    pending = "pending"
    matched = "matched"
    fulfilled = "fulfilled"
    cancelled = "cancelled"


class MatchStatus(str, enum.Enum):
    active = "active"
    completed = "completed"
    cancelled = "cancelled"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    first_name: str | None = None
    last_name: str | None = None
    role: UserRole | None = Field(default=None, index=True)
    rating: float = Field(default=5.0)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))

    @property
    def display_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p) or self.email


class HelpRequest(SQLModel, table=True):
    __tablename__ = "requests"
    __table_args__ = (Index("ix_requests_status_created_at", "status", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    requester_id: int = Field(foreign_key="users.id", index=True)
    title: str | None = None
    category: str
    description: str
    urgency: Urgency = Field(default=Urgency.low)
    status: RequestStatus = Field(default=RequestStatus.pending, index=True)
    dispatched_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))


class Match(SQLModel, table=True):
    __tablename__ = "matches"
    __table_args__ = (
        # At most one active match per request, even if application checks race.
        Index(
            "ix_matches_one_active_per_request",
            "request_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    request_id: int = Field(foreign_key="requests.id", index=True)
    helper_id: int = Field(foreign_key="users.id", index=True)
    status: MatchStatus = Field(default=MatchStatus.active, index=True)
    matched_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))
    completed_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))


class Rating(SQLModel, table=True):
    __tablename__ = "ratings"
    __table_args__ = (Index("ix_ratings_match_rater", "match_id", "rater_id", unique=True),)

    id: int | None = Field(default=None, primary_key=True)
    match_id: int = Field(foreign_key="matches.id")
    rater_id: int = Field(foreign_key="users.id", index=True)
    ratee_id: int = Field(foreign_key="users.id", index=True)
    score: int = Field(ge=1, le=5)
    comment: str | None = None
    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
