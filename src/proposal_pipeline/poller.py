"""Adaptive poller — an explicit scheduler resource for one pipeline.

The poller owns a background task that sleeps for the current interval and
then ticks.  Each tick:

  1. updates ``elapsed_seconds`` (always, even while paused);
  2. returns early when paused, when the fetch predicate says no, or when a
     fetch is already in flight;
  3. otherwise awaits one fetch.

The interval follows the cadence reported by the owner:

  ========  ==========================================================
  fast      a document is analyzing
  normal    idle or waiting for work to begin
  settling  document stage complete, next stage's start pending
  slow      documents processed, a later stage running
  stopped   terminal; the background task exits
  ========  ==========================================================

A new interval is committed only when it differs from the current one by
more than the hysteresis band.  A failed fetch multiplies the interval by
``backoff_factor`` (capped at ``max_backoff``) until a fetch succeeds.
"""

import asyncio
import enum
import logging
import time
from typing import Awaitable, Callable

from proposal_pipeline.config import OrchestratorSettings
from proposal_pipeline.errors import TransientFetchError

logger = logging.getLogger(__name__)


class Cadence(str, enum.Enum):
    FAST = "fast"
    NORMAL = "normal"
    SETTLING = "settling"
    SLOW = "slow"
    STOPPED = "stopped"


class AdaptivePoller:
    """Schedules single-flight fetches at a phase-dependent interval.

    Parameters
    ----------
    fetch:
        Coroutine function performing one fetch.  May raise
        ``TransientFetchError``, which triggers back-off.
    cadence:
        Returns the cadence for the current pipeline phase.
    should_fetch:
        Extra predicate consulted on every tick (e.g. "pipeline active").
    clock:
        Monotonic clock in seconds; injectable for tests.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[object]],
        cadence: Callable[[], Cadence],
        *,
        settings: OrchestratorSettings | None = None,
        should_fetch: Callable[[], bool] | None = None,
        name: str = "pipeline",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._cadence_fn = cadence
        self._settings = settings or OrchestratorSettings()
        self._should_fetch = should_fetch or (lambda: True)
        self._name = name
        self._clock = clock

        self._task: asyncio.Task | None = None
        self._wakeup = asyncio.Event()
        self._paused = False
        self._in_flight = False
        self._backoff = 1.0
        self._started_at = clock()
        self._elapsed = 0.0
        self._cadence = Cadence.NORMAL
        self._interval: float | None = self._settings.normal_interval
        self.fetch_count = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def elapsed_seconds(self) -> float:
        return self._elapsed

    @property
    def cadence(self) -> Cadence:
        return self._cadence

    @property
    def interval(self) -> float | None:
        """Committed interval in seconds; None once stopped."""
        return self._interval

    def interval_for(self, cadence: Cadence) -> float | None:
        s = self._settings
        base = {
            Cadence.FAST: s.fast_interval,
            Cadence.NORMAL: s.normal_interval,
            Cadence.SETTLING: s.settling_interval,
            Cadence.SLOW: s.slow_interval,
        }.get(cadence)
        if base is None:
            return None
        if self._backoff > 1.0:
            return min(base * self._backoff, max(base, s.max_backoff))
        return base

    def reschedule(self) -> bool:
        """Recompute the interval from the current cadence.

        Returns True when a new interval was committed.  A move into or
        out of ``stopped`` always commits.
        """
        cadence = self._cadence_fn()
        target = self.interval_for(cadence)
        self._cadence = cadence
        if target is None or self._interval is None:
            changed = target != self._interval
        else:
            changed = abs(target - self._interval) > self._settings.hysteresis
        if changed:
            logger.debug(
                "Poller %s: interval %s -> %s (%s)",
                self._name, self._interval, target, cadence.value,
            )
            self._interval = target
        return changed

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> bool:
        """Run one poll step.  Returns True when a fetch was performed."""
        self._elapsed = self._clock() - self._started_at
        if self._paused:
            return False
        if self._in_flight:
            logger.debug("Poller %s: fetch already in flight, skipping tick", self._name)
            return False
        if not self._should_fetch():
            return False

        self._in_flight = True
        try:
            self.fetch_count += 1
            await self._fetch()
        except TransientFetchError as exc:
            self._backoff = self._backoff * self._settings.backoff_factor
            logger.warning(
                "Poller %s: fetch failed (%s); backing off x%.2f",
                self._name, exc, self._backoff,
            )
        else:
            self._backoff = 1.0
        finally:
            self._in_flight = False
        self.reschedule()
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background loop (no-op when already running)."""
        if self.running:
            return
        self._wakeup.clear()
        self._task = asyncio.create_task(self._run(), name=f"poller-{self._name}")

    async def stop(self) -> None:
        """Cancel the background loop and wait for it to exit."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def pause(self) -> None:
        """Suppress fetches.  An in-flight fetch is not cancelled."""
        self._paused = True

    def resume(self) -> None:
        self._paused = False
        self._wakeup.set()

    def reset(self) -> None:
        """Zero the elapsed counter, clear back-off and pause, and reschedule."""
        self._started_at = self._clock()
        self._elapsed = 0.0
        self._backoff = 1.0
        self._paused = False
        self._cadence = Cadence.NORMAL
        self._interval = self._settings.normal_interval
        self._wakeup.set()

    def wake(self) -> None:
        """Recompute the interval now; interrupts the current sleep on change."""
        if self.reschedule():
            self._wakeup.set()

    async def _run(self) -> None:
        logger.debug("Poller %s: started", self._name)
        while True:
            self.reschedule()
            if self._interval is None:
                logger.debug("Poller %s: stopped (terminal)", self._name)
                return
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._interval)
                # Woken early: recompute the interval and sleep again
                continue
            except asyncio.TimeoutError:
                pass
            await self.tick()

    async def __aenter__(self) -> "AdaptivePoller":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
