"""Inbound identity-provider event envelope and processing results."""
from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field

from .sync import ApiModel


class WorkOSEvent(BaseModel):
    """Webhook body or Events API item. Payload fields stay raw in `data`."""

    id: str
    event: str
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("created_at", "createdAt")
    )


class ProcessResult(ApiModel):
    success: bool
    skipped: bool = False
    error: Optional[str] = None


class PollResult(ApiModel):
    processed: int = 0
    skipped: int = 0
    new_cursor: Optional[str] = None
    errors: List[str] = Field(default_factory=list)


EventSource = Literal["webhook", "events_api"]
