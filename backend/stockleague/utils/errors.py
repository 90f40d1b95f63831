"""
Custom exceptions for Stock League.

Provides domain-specific exceptions with clear error messages and
support for structured error handling.
"""

from typing import Optional, Dict, Any


class StockLeagueError(Exception):
    """Base exception for all Stock League errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


# ============================================================================
# Database Errors
# ============================================================================

class DatabaseError(StockLeagueError):
    """Database operation failed."""
    pass


class RecordNotFoundError(DatabaseError):
    """Database record not found."""
    pass


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(StockLeagueError):
    """Data validation failed."""
    pass


class InvalidQuoteError(ValidationError):
    """A quote from the market-data layer cannot be scored."""
    pass


# ============================================================================
# Business Logic Errors
# ============================================================================

class SettlementError(StockLeagueError):
    """Failed to settle a completed contest."""
    pass


class ContestNotSettledError(SettlementError):
    """Settlement result requested for a contest that is not yet settled."""
    pass
