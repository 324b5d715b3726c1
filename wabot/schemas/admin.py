from typing import List, Optional, Union

from pydantic import BaseModel, Field, field_validator


class IntentExampleIn(BaseModel):
    text: str
    weight: float = Field(default=1.0, gt=0)


class IntentIn(BaseModel):
    name: str
    description: Optional[str] = None
    threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    examples: List[Union[str, IntentExampleIn]]

    @field_validator("examples")
    @classmethod
    def require_examples(cls, value: list) -> list:
        if not value:
            raise ValueError("at least one example is required")
        return value

    def to_loader_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "threshold": self.threshold,
            "examples": [item if isinstance(item, str) else item.model_dump() for item in self.examples],
        }


class BulkLoadRequest(BaseModel):
    intents: List[IntentIn]


class BulkLoadResponse(BaseModel):
    intents: int
    examples_added: int
    examples_skipped: int


class FaqRefreshResponse(BaseModel):
    success: bool
    count: int = 0
    error: Optional[str] = None


class ThresholdUpdate(BaseModel):
    threshold: float = Field(ge=0.0, le=1.0)
