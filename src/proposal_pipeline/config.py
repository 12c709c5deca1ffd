"""Orchestrator configuration — reads tuning knobs from environment variables.

All settings have defaults suitable for a browser-facing deployment.  Tests
construct ``OrchestratorSettings`` directly with short intervals and a zero
settle delay.
"""

import os
from dataclasses import dataclass

from proposal_pipeline.constants import (
    FAST_POLL_INTERVAL,
    NORMAL_POLL_INTERVAL,
    SETTLING_POLL_INTERVAL,
    SLOW_POLL_INTERVAL,
)


@dataclass(frozen=True)
class OrchestratorSettings:
    """Immutable per-orchestrator configuration."""

    # Poll cadences (seconds)
    fast_interval: float = FAST_POLL_INTERVAL
    normal_interval: float = NORMAL_POLL_INTERVAL
    settling_interval: float = SETTLING_POLL_INTERVAL
    slow_interval: float = SLOW_POLL_INTERVAL

    # An interval change is only committed when it moves by more than this
    hysteresis: float = 0.5
    # Back-off after a failed fetch multiplies the interval, up to this cap
    backoff_factor: float = 1.5
    max_backoff: float = 30.0

    # Pause before starting the next stage so the prior stage's last
    # writes land first.  Does not delay setting next_stage_triggered.
    settle_delay: float = 1.5
    # Bound on waiting for a worker's start confirmation
    start_timeout: float = 15.0
    # Bound on waiting for a persisted-state write
    write_timeout: float = 5.0

    # Tracker: minimum progress movement that counts as a change
    min_progress_delta: int = 1
    # Stage progress writes below this delta are skipped (0 writes every change)
    progress_write_delta: float = 5.0

    activity_log_size: int = 10


def load_settings() -> OrchestratorSettings:
    """Build settings from ``PIPELINE_*`` environment variables."""
    return OrchestratorSettings(
        hysteresis=float(os.getenv("PIPELINE_HYSTERESIS", "0.5")),
        max_backoff=float(os.getenv("PIPELINE_MAX_BACKOFF", "30")),
        settle_delay=float(os.getenv("PIPELINE_SETTLE_DELAY", "1.5")),
        start_timeout=float(os.getenv("PIPELINE_START_TIMEOUT", "15")),
        write_timeout=float(os.getenv("PIPELINE_WRITE_TIMEOUT", "5")),
        progress_write_delta=float(os.getenv("PIPELINE_PROGRESS_WRITE_DELTA", "5")),
        activity_log_size=int(os.getenv("PIPELINE_ACTIVITY_LOG_SIZE", "10")),
    )
