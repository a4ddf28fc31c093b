"""Custom exception classes for the access-control core."""

from typing import Optional

from fastapi import HTTPException, status


class AccessGuardError(Exception):
    """Base exception for AccessGuard."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: Optional[str] = None

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class AuthenticationError(AccessGuardError):
    """Raised when the caller cannot be identified."""
    status_code = status.HTTP_401_UNAUTHORIZED


class AuthorizationError(AccessGuardError):
    """Raised when the caller lacks permission or the target is protected."""
    status_code = status.HTTP_403_FORBIDDEN


class ResourceNotFoundError(AccessGuardError):
    """Raised when a requested resource is not found."""
    status_code = status.HTTP_404_NOT_FOUND


class ResourceConflictError(AccessGuardError):
    """Raised when a resource already exists or a change would break an invariant."""
    status_code = status.HTTP_409_CONFLICT


class AntiLockoutError(ResourceConflictError):
    """Raised when a change would leave the installation without an administrator."""
    code = "anti-lockout"

    def __init__(self, message: str = "cannot remove the last administrator"):
        super().__init__(message)


class RetryableError(AccessGuardError):
    """Error that carries a retry-after hint in seconds."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        self.retry_after = retry_after
        super().__init__(message)


class RateLimitExceededError(RetryableError):
    """Raised when a client exhausts the request budget of a route."""
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, retry_after: Optional[int] = None):
        super().__init__("Too many requests. Please try again later.", retry_after)


class IPBannedError(RetryableError):
    """Raised when the client IP is temporarily banned."""
    status_code = status.HTTP_403_FORBIDDEN
    code = "ip-banned"

    def __init__(self, retry_after: Optional[int] = None):
        super().__init__("Your IP is temporarily blocked due to API abuse.", retry_after)


class StoreUnavailableError(AccessGuardError):
    """Raised when the datastore or counter store cannot be reached."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


# HTTP exception shortcuts
def unauthorized(detail: str = "Not authenticated") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )
