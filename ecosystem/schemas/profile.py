from uuid import UUID

from ecosystem.schemas.onboarding import CamelModel


class RefreshEmbeddingsRequest(CamelModel):
    user_id: UUID


class RefreshEmbeddingsResponse(CamelModel):
    user_id: UUID
    refreshed: list[str] = []
    removed: list[str] = []
    unchanged: list[str] = []
