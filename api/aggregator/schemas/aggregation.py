from datetime import datetime
import math
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class ResultItem(BaseModel):
    """One search match or feed entry as returned by a downstream service.

    Downstream services speak camelCase; both spellings are accepted on input and
    the snake_case field names are used on output.
    """

    model_config = ConfigDict(populate_by_name=True)

    provider_id: str | None = Field(default=None, validation_alias=AliasChoices("providerId", "provider_id"))
    service_id: str | None = Field(default=None, validation_alias=AliasChoices("serviceId", "service_id"))
    timestamp: int | None = None
    icon_url: str | None = Field(default=None, validation_alias=AliasChoices("iconUrl", "icon_url"))
    details: Any = None
    url: str | None = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _truncate_fractional_millis(cls, value: Any) -> Any:
        # Epoch milliseconds; some services emit them as floats.
        if isinstance(value, float) and math.isfinite(value):
            return int(value)
        return value


class SearchRequest(BaseModel):
    query: str = Field(min_length=1, max_length=1024)


class FeedRequest(BaseModel):
    since: datetime | None = None


class ServiceResultOut(BaseModel):
    provider_id: str
    service_id: str
    account_id: str
    pending: bool
    error_message: str | None = None
    items: list[ResultItem] | None = None


class PollResultOut(BaseModel):
    job_id: str | None
    kind: str
    state: str
    service_results: list[ServiceResultOut] = Field(default_factory=list)
    items: list[ResultItem] = Field(default_factory=list)
