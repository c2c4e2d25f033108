"""
Ecosystem — ORM model registry.

Importing every model here ensures that Alembic (and any other tool that
inspects ``Base.metadata``) discovers all tables automatically.
"""

from ecosystem.models.user import User
from ecosystem.models.profile import Profile
from ecosystem.models.embedding import Embedding
from ecosystem.models.match import Match, Interaction
from ecosystem.models.feedback import Feedback
from ecosystem.models.onboarding import OnboardingProgress

__all__ = [
    "User",
    "Profile",
    "Embedding",
    "Match",
    "Interaction",
    "Feedback",
    "OnboardingProgress",
]
