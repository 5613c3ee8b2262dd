# =============================================================================
# File: sms_bridge/infra/matrix/exceptions.py
# Description: Exception hierarchy for the Matrix client-server API
# =============================================================================

from typing import Optional


class MatrixError(Exception):
    """Base exception for Matrix API errors"""

    def __init__(
            self,
            message: str,
            status_code: Optional[int] = None,
            errcode: Optional[str] = None,
            error: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.errcode = errcode
        self.error = error or ""


# =============================================================================
# Client Errors (4xx)
# =============================================================================

class MatrixClientError(MatrixError):
    """Base class for 4xx client errors"""
    pass


class MatrixBadRequestError(MatrixClientError):
    """400 - M_BAD_JSON, M_ROOM_IN_USE, M_INVALID_PARAM, ..."""
    pass


class MatrixAuthenticationError(MatrixClientError):
    """401 - Missing or unknown application service token"""
    pass


class MatrixForbiddenError(MatrixClientError):
    """403 - M_FORBIDDEN (not allowed, or already a member)"""
    pass


class MatrixNotFoundError(MatrixClientError):
    """404 - M_NOT_FOUND"""
    pass


class MatrixRateLimitError(MatrixClientError):
    """429 - M_LIMIT_EXCEEDED"""

    def __init__(self, message: str, retry_after_ms: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after_ms = retry_after_ms


# =============================================================================
# Server / Network Errors
# =============================================================================

class MatrixServerError(MatrixError):
    """5xx server errors"""
    pass


class MatrixNetworkError(MatrixError):
    """Network connectivity errors"""
    pass


class MatrixTimeoutError(MatrixError):
    """Request timeout"""
    pass


def is_room_in_use(error: Exception) -> bool:
    """createRoom failed because the alias is already taken."""
    return isinstance(error, MatrixError) and error.errcode == "M_ROOM_IN_USE"


def is_already_member(error: Exception) -> bool:
    """invite failed because the account is already invited or joined."""
    if not isinstance(error, MatrixForbiddenError):
        return False
    text = (error.error or str(error)).lower()
    return "is already" in text or "already in the room" in text
