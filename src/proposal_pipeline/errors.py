"""Exception types raised inside the pipeline SDK.

None of these escape the orchestrator for expected failure modes: fetch
errors and write timeouts are logged and retried by the poll cycle, and
start failures become a ``failed`` stage status.  They exist so the
components can signal each case precisely to the orchestrator.
"""


class PipelineError(Exception):
    """Base class for pipeline failures."""


class TransientFetchError(PipelineError):
    """Reading the persisted pipeline state failed; retry on the next tick."""


class JobStartError(PipelineError):
    """A stage worker refused or failed to start."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.message = message


class PersistenceTimeout(PipelineError):
    """A persisted-state write did not confirm within its bound."""
