"""Activity log entry model."""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

EventLevel = Literal["info", "success", "warning", "error"]


class PipelineEvent(BaseModel):
    """Immutable, timestamped line in a pipeline's activity log."""

    model_config = ConfigDict(frozen=True)

    message: str
    level: EventLevel = "info"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
