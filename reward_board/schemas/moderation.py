from typing import Any, Literal

from pydantic import BaseModel, Field

ModerationAction = Literal["APPROVE", "ADJUST", "REJECT"]
JobStatus = Literal["queued", "claimed", "done", "dead_letter"]

LISTING_REVIEW_JOB_KIND = "listing-review"
LISTING_RESOURCE_TYPE = "listing"


class JobOut(BaseModel):
    id: str
    channel: str
    kind: str
    target_type: str
    target_id: str | None = None
    inputs_json: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus
    attempt: int = 0
    max_attempts: int = 3
    error_json: dict[str, Any] | None = None
