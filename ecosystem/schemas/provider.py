import math
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, RootModel, StrictFloat, StrictInt, field_validator


class EmbeddingResponse(RootModel[list[list[Union[StrictFloat, StrictInt]]]]):
    """Feature-extraction payload: one row of floats per input."""

    @field_validator("root")
    @classmethod
    def _non_empty_and_finite(cls, rows: list[list[float]]) -> list[list[float]]:
        if not rows or not rows[0]:
            raise ValueError("embedding payload is empty")
        for row in rows:
            if not all(math.isfinite(v) for v in row):
                raise ValueError("embedding payload contains non-finite values")
        return rows

    @property
    def first(self) -> list[float]:
        return self.root[0]


class TranscriptionConstraints(BaseModel):
    duration_seconds: float = Field(ge=0)
    mime_type: str = "audio/webm"
    filename: str = "recording.webm"


class TranscriptionResponse(BaseModel):
    text: str
    confidence: str
    duration_seconds: float


class ModerationResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    flagged: bool
    categories: dict[str, bool] = {}


class ModerationResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    results: list[ModerationResult] = Field(min_length=1)

    @property
    def flagged(self) -> bool:
        return self.results[0].flagged
