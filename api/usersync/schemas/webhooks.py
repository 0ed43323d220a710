from typing import Any

from pydantic import BaseModel, Field


class ClerkWebhookEvent(BaseModel):
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    object: str | None = None


class ErrorOut(BaseModel):
    error: str
