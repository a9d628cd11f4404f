"""Custom exception classes for the application."""

class BaseGraderException(Exception):
    """Base exception for all application-specific errors."""
    pass

class ConfigError(BaseGraderException):
    """Error related to configuration loading or values."""
    pass

class APIError(BaseGraderException):
    """Error interacting with an external service (the data gateway, Gemini)."""
    def __init__(self, message: str, status_code: int | None = None, service: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.service = service

    def __str__(self) -> str:
        base = super().__str__()
        details = []
        if self.service:
            details.append(f"Service: {self.service}")
        if self.status_code:
            details.append(f"Status Code: {self.status_code}")
        if details:
            return f"{base} ({', '.join(details)})"
        return base

class TransportError(APIError):
    """The remote endpoint could not be reached (network, DNS, timeout)."""
    pass

class ApplicationError(APIError):
    """The remote endpoint answered with an explicit failure."""
    pass

class ConfigurationError(ApplicationError):
    """The endpoint is misconfigured or answered with an unexpected shape.

    Callers show deployment remediation steps for this error instead of the
    plain server message.
    """
    pass

class EmptyDataSourceError(ApplicationError):
    """The backing sheet of a collection has no rows; an empty result, not a failure."""
    pass

class AuthenticationError(BaseGraderException):
    """Login was rejected."""
    pass

class ValidationError(BaseGraderException):
    """Required input is missing or invalid. Raised before any network call."""
    pass

class PipelineStepError(BaseGraderException):
    """A transcription, similarity or scoring step failed. Always recoverable."""
    def __init__(self, message: str, step: str | None = None):
        super().__init__(message)
        self.step = step

class UserCancelledError(BaseGraderException):
    """Error raised when the user cancels an operation."""
    pass
