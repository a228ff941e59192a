class LinkPulseError(Exception):
    """Base exception for all application-specific errors."""

    error_code = "app:linkpulse_error"


class NotFoundError(LinkPulseError):
    """Raised when a short code does not match any stored URL."""

    error_code = "store:not_found"


class ConflictError(LinkPulseError):
    """Raised when saving a URL whose id or short code already exists."""

    error_code = "store:conflict"


class UnavailableError(LinkPulseError):
    """Raised when the database or the queue cannot be reached."""

    error_code = "infra:unavailable"
