"""Custom exception classes for the Stock League API"""
from fastapi import HTTPException, status

from api.schemas.errors import ErrorCode
from stockleague.utils.errors import (
    ContestNotSettledError,
    DatabaseError,
    RecordNotFoundError,
    StockLeagueError,
    ValidationError,
)


class StockLeagueAPIException(HTTPException):
    """Base exception with error_code support"""

    def __init__(self, error_code: str, message: str, status_code: int, details=None):
        super().__init__(status_code=status_code, detail=message)
        self.error_code = error_code
        self.details = details


class ResourceNotFoundException(StockLeagueAPIException):
    """Exception for when a resource is not found"""

    def __init__(self, resource: str, identifier: str = None):
        message = f"{resource} not found"
        if identifier:
            message += f": {identifier}"
        super().__init__(
            error_code=ErrorCode.NOT_FOUND,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
        )


class InvalidInputException(StockLeagueAPIException):
    """Exception for invalid input data"""

    def __init__(self, message: str, details=None):
        super().__init__(
            error_code=ErrorCode.INVALID_INPUT,
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


# Domain error -> (status, error_code); first match wins, so subclasses go first
_DOMAIN_ERROR_MAP = (
    (RecordNotFoundError, status.HTTP_404_NOT_FOUND, ErrorCode.NOT_FOUND),
    (ContestNotSettledError, status.HTTP_409_CONFLICT, ErrorCode.CONTEST_NOT_SETTLED),
    (ValidationError, status.HTTP_400_BAD_REQUEST, ErrorCode.INVALID_INPUT),
    (DatabaseError, status.HTTP_503_SERVICE_UNAVAILABLE, ErrorCode.DATABASE_ERROR),
)


def from_domain_error(exc: StockLeagueError) -> StockLeagueAPIException:
    """Translate a core exception into an API exception with the matching status."""
    for error_type, status_code, error_code in _DOMAIN_ERROR_MAP:
        if isinstance(exc, error_type):
            return StockLeagueAPIException(error_code, exc.message, status_code, exc.details or None)
    return StockLeagueAPIException(
        ErrorCode.INTERNAL_ERROR,
        exc.message,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        exc.details or None,
    )
