"""
Domain exceptions raised by AidlY services.

API routers translate these into HTTP errors; background jobs convert them
into typed results (see app.core.result).
"""


class AidlyError(Exception):
    """Base class for service errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(AidlyError):
    pass


class ValidationError(AidlyError):
    pass


class ReportQueryError(ValidationError):
    """Report SQL failed validation or execution."""


class InvalidCronExpression(ValidationError):
    pass


class ExportError(AidlyError):
    pass


class ChannelAuthorizationError(AidlyError):
    """Caller may not subscribe to the requested realtime channel."""
