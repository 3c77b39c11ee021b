# src/sandscan/engine/errors.py
"""
Exception taxonomy shared by the pipeline, the sandbox manager and the HTTP layer.
"""


class SandscanError(Exception):
    """Base class for every error raised by sandscan."""


class InvalidInput(SandscanError):
    """Malformed repository reference or unknown project type. No job is created."""


class NotFound(SandscanError):
    pass


class JobStateError(SandscanError):
    """A job mutation would break the state machine or the append-only history."""


class JobCancelled(SandscanError):
    pass


class SandboxError(SandscanError):
    pass


class SandboxProvisionError(SandboxError):
    pass


class ExecutionTimeout(SandboxError):
    def __init__(self, command, timeout):
        super().__init__(f"Command exceeded {timeout}s timeout: {command}")
        self.command = command
        self.timeout = timeout


class SignalExtractionError(SandscanError):
    """One commit or dependency source could not be parsed. Callers skip the item."""

    def __init__(self, item: str, reason: str):
        super().__init__(f"{item}: {reason}")
        self.item = item
        self.reason = reason


class OracleUnavailable(SandscanError):
    pass


class ScoringError(SandscanError):
    pass


class SourceFetchError(SandscanError):
    pass


class InvalidReference(SourceFetchError, InvalidInput):
    pass


class RepositoryNotFound(SourceFetchError):
    pass


class FetchNetworkError(SourceFetchError):
    pass
