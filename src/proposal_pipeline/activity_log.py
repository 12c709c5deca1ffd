"""Bounded, newest-first activity trail for one pipeline.

Purely diagnostic: nothing in the orchestrator reads it back.
"""

from collections import deque
from typing import Iterator

from proposal_pipeline.models.events import EventLevel, PipelineEvent


class ActivityLog:
    """Fixed-capacity ring of ``PipelineEvent`` entries, newest first."""

    def __init__(self, capacity: int = 10) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._entries: deque[PipelineEvent] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen

    def append(self, message: str, level: EventLevel = "info") -> PipelineEvent:
        """Prepend a timestamped entry, dropping the oldest when full."""
        event = PipelineEvent(message=message, level=level)
        self._entries.appendleft(event)
        return event

    def entries(self) -> tuple[PipelineEvent, ...]:
        return tuple(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PipelineEvent]:
        return iter(tuple(self._entries))
