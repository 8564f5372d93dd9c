"""Pydantic models for request/response schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field

from helpdispatch.db_models import Urgency


class RequestCreate(BaseModel):
    category: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1, max_length=5000)
    urgency: Urgency = Field(default=Urgency.low, description="urgent, high, medium or low")
    title: str | None = Field(default=None, max_length=200)


class AssignRequest(BaseModel):
    helper_id: int = Field(gt=0)


class RatingCreate(BaseModel):
    match_id: int = Field(gt=0)
    # Range is checked by the service so out-of-range scores get invalid_score.
    score: int
    comment: str | None = Field(default=None, max_length=2000)


class RatingUpdate(BaseModel):
    score: int | None = None
    comment: str | None = Field(default=None, max_length=2000)


class MatchInfo(BaseModel):
    id: int
    helper_id: int
    status: str
    matched_at: str | None = None
    completed_at: str | None = None


class RequestResponse(BaseModel):
    id: int
    requester_id: int
    title: str | None = None
    category: str
    description: str
    urgency: str
    status: str
    dispatched_at: str | None = None
    created_at: str | None = None
    match: MatchInfo | None = None


class AssignResponse(BaseModel):
    match_id: int
    request_id: int
    helper_id: int
    status: str
    matched_at: str | None = None


class HelperSummary(BaseModel):
    id: int
    name: str | None = None
    rating: float | None = None


class CompleteResponse(BaseModel):
    match_id: int
    request_id: int
    status: str
    request_status: str
    completed_at: str | None = None
    should_prompt_rating: bool
    helper: HelperSummary


class RatingResponse(BaseModel):
    id: int
    match_id: int
    rater_id: int
    ratee_id: int
    score: int
    comment: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    ratee_rating: float | None = None


class RatingDeleteResponse(BaseModel):
    id: int
    deleted: bool
    ratee_id: int
    ratee_rating: float


class RatingStats(BaseModel):
    average: float
    total: int
    distribution: dict[str, int]


class HelperRatingsResponse(BaseModel):
    helper_id: int
    name: str
    ratings: list[RatingResponse]
    stats: RatingStats
    limit: int
    offset: int


class PendingRating(BaseModel):
    match_id: int
    request_id: int
    title: str | None = None
    category: str
    completed_at: str | None = None
    helper: HelperSummary


class PendingRatingsResponse(BaseModel):
    pending: list[PendingRating]
    total: int


class MyRatingsResponse(BaseModel):
    given: list[RatingResponse]
    received: list[RatingResponse]


class ErrorResponse(BaseModel):
    error: str
    code: str | None = None
