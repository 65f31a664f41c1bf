"""
stage_settlement/errors.py
Centralized error handling

ERROR RESPONSE STRUCTURE:
{
    "success": false,
    "error": "ErrorType",
    "message": "Human-readable description",
    "code": "UNIQUE_ERROR_CODE",
    "details": {} (optional)
}

HTTP STATUS CODE DISCIPLINE:
- 400: Invalid input / precondition not met
- 403: Caller lacks manage rights
- 404: Resource does not exist
- 409: Another operator holds the settlement lock, or stage already settled
- 422: Pre-settlement validation failed (recoverable with force)
- 500: Internal failures only
"""

import logging
import uuid
from typing import Optional, Dict, Any

from fastapi import status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorCode:
    """Unique error codes for machine-readable error handling"""

    INVALID_INPUT = "INVALID_INPUT"
    VALIDATION_ERROR = "VALIDATION_ERROR"

    ACCESS_DENIED = "ACCESS_DENIED"

    NOT_FOUND = "NOT_FOUND"
    STAGE_NOT_FOUND = "STAGE_NOT_FOUND"

    # Settlement preconditions
    VALIDATION_FAILED = "VALIDATION_FAILED"
    INVALID_STAGE_STATUS = "INVALID_STAGE_STATUS"
    INVALID_REWARD_POOL = "INVALID_REWARD_POOL"
    NO_VOTES = "NO_VOTES"
    STAGE_NOT_SETTLED = "STAGE_NOT_SETTLED"

    # Concurrency
    SETTLEMENT_IN_PROGRESS = "SETTLEMENT_IN_PROGRESS"
    STAGE_ALREADY_SETTLED = "STAGE_ALREADY_SETTLED"

    # Pool overrun
    DISTRIBUTION_EXCEEDS_POOL = "DISTRIBUTION_EXCEEDS_POOL"
    COMMENT_DISTRIBUTION_EXCEEDS_POOL = "COMMENT_DISTRIBUTION_EXCEEDS_POOL"

    SYSTEM_ERROR = "SYSTEM_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class APIError(Exception):
    """Base API exception with consistent structure"""

    def __init__(
        self,
        status_code: int,
        error: str,
        message: str,
        code: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.status_code = status_code
        self.error = error
        self.message = message
        self.code = code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        result = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code
        }
        if self.details:
            result["details"] = self.details
        return result

    def to_response(self) -> JSONResponse:
        """Convert to FastAPI JSONResponse"""
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


class BadRequestError(APIError):
    """400 Bad Request - Invalid input or unmet precondition"""
    def __init__(self, message: str, code: str = ErrorCode.INVALID_INPUT, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="Bad Request",
            message=message,
            code=code,
            details=details
        )


class ForbiddenError(APIError):
    """403 Forbidden - Access denied"""
    def __init__(self, message: str, code: str = ErrorCode.ACCESS_DENIED, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            error="Forbidden",
            message=message,
            code=code,
            details=details
        )


class NotFoundError(APIError):
    """404 Not Found - Resource does not exist"""
    def __init__(self, resource: str, identifier: Any = None, code: str = ErrorCode.NOT_FOUND):
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error="Not Found",
            message=message,
            code=code
        )


class ConflictError(APIError):
    """409 Conflict - Concurrent modification or terminal state"""
    def __init__(self, message: str, code: str, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error="Conflict",
            message=message,
            code=code,
            details=details
        )


class UnprocessableError(APIError):
    """422 - Request understood but blocked by validation rules"""
    def __init__(self, message: str, code: str = ErrorCode.VALIDATION_FAILED, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error="Validation Failed",
            message=message,
            code=code,
            details=details
        )


class InvalidStateError(APIError):
    """400 Bad Request - Stage is not in a state that allows the operation"""
    def __init__(self, message: str, code: str = ErrorCode.INVALID_STAGE_STATUS, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="Invalid State",
            message=message,
            code=code,
            details=details
        )


class InternalError(APIError):
    """500 Internal Server Error - Use sparingly, only for true internal failures"""
    def __init__(self, message: str = "An internal error occurred", code: str = ErrorCode.INTERNAL_ERROR,
                 log_id: Optional[str] = None):
        details = {"log_id": log_id} if log_id else None
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error="Internal Error",
            message=message,
            code=code,
            details=details
        )


# Settlement outcome code -> API error class
_OUTCOME_ERRORS = {
    ErrorCode.ACCESS_DENIED: ForbiddenError,
    ErrorCode.VALIDATION_FAILED: UnprocessableError,
    ErrorCode.SETTLEMENT_IN_PROGRESS: ConflictError,
    ErrorCode.STAGE_ALREADY_SETTLED: ConflictError,
    ErrorCode.INVALID_STAGE_STATUS: InvalidStateError,
    ErrorCode.INVALID_REWARD_POOL: BadRequestError,
    ErrorCode.NO_VOTES: BadRequestError,
    ErrorCode.STAGE_NOT_SETTLED: InvalidStateError,
}


def error_for_code(code: str, message: str, details: Optional[Dict] = None) -> APIError:
    """Build the API error matching a settlement outcome code."""
    if code == ErrorCode.STAGE_NOT_FOUND:
        return APIError(
            status_code=status.HTTP_404_NOT_FOUND,
            error="Not Found",
            message=message,
            code=code
        )
    error_cls = _OUTCOME_ERRORS.get(code)
    if error_cls is not None:
        return error_cls(message, code=code, details=details)

    log_id = str(uuid.uuid4())[:8]
    logger.error(f"[{log_id}] Settlement failure {code}: {message}")
    return InternalError(message=message, code=code, log_id=log_id)
