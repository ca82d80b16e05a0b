class ProgressionError(Exception):
    """Base class for progression engine errors."""


class InvalidInput(ProgressionError, ValueError):
    """Raised for malformed set data such as negative reps or weight."""


class UpstreamUnavailable(ProgressionError):
    """Raised when a collaborator store cannot be read."""

    def __init__(self, source: str, message: str = "") -> None:
        self.source = source
        detail = f"{source} unavailable"
        if message:
            detail += f": {message}"
        super().__init__(detail)


class ConcurrencyConflict(ProgressionError):
    """Raised when a per-user state transition lost a concurrent race."""
