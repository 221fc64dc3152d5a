from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

ListingStatus = Literal["PENDING_REVIEW", "PUBLISHED", "BANNED"]
ListingScope = Literal["NATIONAL", "STATE", "MUNICIPALITY", "RADIUS"]

PENDING_REVIEW: ListingStatus = "PENDING_REVIEW"
PUBLISHED: ListingStatus = "PUBLISHED"
BANNED: ListingStatus = "BANNED"
TERMINAL_STATUSES = frozenset({PUBLISHED, BANNED})


class ListingCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1, max_length=5000)
    category: str = Field(min_length=1, max_length=100)
    amount_minor_units: int = Field(gt=0, strict=True)
    deadline: date
    scope: ListingScope = "NATIONAL"
    state: str | None = Field(default=None, min_length=2, max_length=2)
    municipality_code: str | None = Field(default=None, min_length=1, max_length=16)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    radius_meters: int | None = Field(default=None, gt=0, strict=True)

    @model_validator(mode="before")
    @classmethod
    def parse_deadline(cls, data: Any) -> Any:
        # only calendar dates or YYYY-MM-DD strings, never timestamps
        if not isinstance(data, dict):
            return data
        deadline = data.get("deadline")
        if deadline is None or (isinstance(deadline, date) and not isinstance(deadline, datetime)):
            return data
        if not isinstance(deadline, str):
            raise ValueError("deadline must be an ISO date (YYYY-MM-DD)")
        try:
            parsed = date.fromisoformat(deadline.strip())
        except ValueError as exc:
            raise ValueError("deadline must be an ISO date (YYYY-MM-DD)") from exc
        return {**data, "deadline": parsed}

    @model_validator(mode="after")
    def check_scope_fields(self) -> "ListingCreate":
        if not self.title.strip() or not self.description.strip() or not self.category.strip():
            raise ValueError("title, description and category must not be blank")
        if self.scope == "STATE" and not self.state:
            raise ValueError("state is required for STATE scope")
        if self.scope == "MUNICIPALITY" and not self.municipality_code:
            raise ValueError("municipality_code is required for MUNICIPALITY scope")
        if self.scope == "RADIUS" and (
            self.latitude is None or self.longitude is None or self.radius_meters is None
        ):
            raise ValueError("latitude, longitude and radius_meters are required for RADIUS scope")
        return self


class ListingAccepted(BaseModel):
    id: str
    status: ListingStatus


class ListingFeedOut(BaseModel):
    id: str
    title: str
    category: str
    amount_minor_units: int
    deadline: date
    scope: ListingScope
    state: str | None = None
    municipality_code: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    created_at: datetime
