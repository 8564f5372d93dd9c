"""Mount all API routes."""

from fastapi import APIRouter

from helpdispatch.api.matches import router as matches_router
from helpdispatch.api.ratings import router as ratings_router
from helpdispatch.api.requests import router as requests_router

api_router = APIRouter()
api_router.include_router(requests_router, tags=["requests"])
api_router.include_router(matches_router, tags=["matches"])
api_router.include_router(ratings_router, tags=["ratings"])
