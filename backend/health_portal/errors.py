"""
Domain exceptions shared by the service layer.

Services raise these; the route layer maps them onto HTTP status codes via
``to_http_exception``.
"""

from fastapi import HTTPException, status


class PortalError(Exception):
    """Base class for every domain error raised by the services."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class NotFound(PortalError):
    status_code = status.HTTP_404_NOT_FOUND


class RecordNotFound(NotFound):
    pass


class ProviderNotFound(NotFound):
    pass


class PatientNotFound(NotFound):
    pass


class Conflict(PortalError):
    status_code = status.HTTP_409_CONFLICT


class AlreadyLinked(Conflict):
    pass


class StoreUnavailable(PortalError):
    """The persistence or storage layer could not be reached. Retryable."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class PartialFailure(PortalError):
    """A multi-step operation failed after some steps were already applied.

    ``completed`` lists the steps that went through and were not rolled back.
    """

    def __init__(self, message: str = "", completed: list[str] | None = None):
        super().__init__(message)
        self.completed = completed or []


def to_http_exception(exc: PortalError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)
