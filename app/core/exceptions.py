from typing import Optional, Dict, Any


class AppException(Exception):
    """Base application exception"""
    retryable = False

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        error_code: str = "APP_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class AuthenticationError(AppException):
    """Authentication related errors"""
    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=401,
            error_code="AUTH_ERROR",
            details=details
        )


class AuthorizationError(AppException):
    """Authorization related errors"""
    def __init__(self, message: str = "Insufficient permissions", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=403,
            error_code="AUTHZ_ERROR",
            details=details
        )


class NotFoundError(AppException):
    """Resource not found errors"""
    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=404,
            error_code="NOT_FOUND",
            details=details
        )


class ValidationError(AppException):
    """Malformed input. The caller must fix it before retrying."""
    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=details
        )


class ConflictError(AppException):
    """The request is well-formed but the target's current state forbids it"""
    def __init__(
        self,
        message: str = "Conflict with current state",
        details: Optional[Dict[str, Any]] = None,
        error_code: str = "CONFLICT"
    ):
        super().__init__(
            message=message,
            status_code=409,
            error_code=error_code,
            details=details
        )


class InvalidStateTransitionError(ConflictError):
    """Payout or conversion status does not allow the requested action"""
    def __init__(self, message: str = "Invalid state transition", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            details=details,
            error_code="INVALID_STATE_TRANSITION"
        )


class TransientError(AppException):
    """Store timeout or unavailability"""
    retryable = True

    def __init__(
        self,
        message: str = "Storage temporarily unavailable",
        details: Optional[Dict[str, Any]] = None,
        error_code: str = "TRANSIENT"
    ):
        super().__init__(
            message=message,
            status_code=503,
            error_code=error_code,
            details=details
        )


class PayoutCompletionError(TransientError):
    """Completion was rolled back; the payout is still processing"""
    def __init__(self, message: str = "Payout completion rolled back", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            details=details,
            error_code="PAYOUT_COMPLETION_FAILED"
        )
