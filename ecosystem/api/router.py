"""
Ecosystem — Main API Router

Aggregates all sub-routers under a single prefix so that ``ecosystem.main``
can mount the entire API surface with one ``include_router`` call.
"""

from fastapi import APIRouter

from ecosystem.api import feedback, matching, onboarding, profile
from ecosystem.api.admin import health

router = APIRouter()

router.include_router(matching.router, prefix="/matches", tags=["Matching"])
router.include_router(feedback.router, prefix="/feedback", tags=["Feedback"])
router.include_router(onboarding.router, prefix="/onboarding", tags=["Onboarding"])
router.include_router(profile.router, prefix="/profile", tags=["Profile"])
router.include_router(health.router, prefix="/admin", tags=["Admin"])
