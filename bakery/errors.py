"""Error hierarchy for the ingestion-and-synthesis pipeline."""

from __future__ import annotations


class BakeryError(Exception):
    """Base class for every error bakery reports to the user."""


class ConfigurationError(BakeryError):
    """Missing credential, malformed template or unusable setting."""


class StorageError(BakeryError):
    """Persisting a ticket or change directory failed."""


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

class TrackerError(BakeryError):
    """A tracker API call failed."""

    def __init__(self, message: str, status_code: int | None = None, url: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class AuthError(TrackerError):
    """401/403: the PAT is missing, expired or lacks scope."""


class NotFoundError(TrackerError):
    """404: the work item (or a linked resource) does not exist."""


class TransientNetworkError(TrackerError):
    """Timeout, connection reset or 5xx; eligible for retry."""


class TrackerRequestError(TrackerError):
    """Any other non-retryable failure (other 4xx, undecodable body)."""


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

class GeneratorUnavailable(BakeryError):
    """The generator command could not be located or launched."""


class GeneratorFailed(BakeryError):
    """The generator exited non-zero or timed out."""

    def __init__(self, message: str, exit_code: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class MalformedArtifact(BakeryError):
    """Generator output is missing required sections."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidatorUnavailable(BakeryError):
    """The validator executable could not be resolved; validation is skipped."""
