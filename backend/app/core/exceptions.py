"""Custom exception classes for the application"""

from typing import Optional, Dict, Any


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


# Token Authority errors
class CredentialInvalidError(BaseAPIException):
    """
    Refresh or access credential rejected.

    Malformed, unknown, tampered, expired and revoked credentials all map
    here so callers cannot tell which check failed. The internal reason is
    kept on the exception for server-side logging only.
    """
    def __init__(self, reason: str = "invalid"):
        self.reason = reason
        super().__init__("Please log in again", status_code=401)


class AuthorityUnavailableError(BaseAPIException):
    """Token store or signer temporarily unavailable; safe to retry"""
    def __init__(self, operation: str = "unknown"):
        self.operation = operation
        super().__init__("Something went wrong, please try again", status_code=503)


class IdentityConflictError(BaseAPIException):
    """External identity cannot be merged into the existing account"""
    def __init__(self, message: str = "This account is already linked to a different identity"):
        super().__init__(message, status_code=409)


class IdentityResolutionError(BaseAPIException):
    """User directory write failed while resolving an external identity"""
    def __init__(self, message: str = "Identity resolution failed"):
        super().__init__(message, status_code=502)


# Signer errors (internal; converted to CredentialInvalidError by the token service)
class TokenSignatureError(Exception):
    """Base error raised by refresh-token verification"""


class TokenExpiredError(TokenSignatureError):
    """JWT token has expired"""


class TokenInvalidError(TokenSignatureError):
    """JWT token signature or claims are invalid"""


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Base authentication error"""
    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=401, details=details)


class InvalidCredentialsError(AuthenticationError):
    """Invalid email or password"""
    def __init__(self):
        super().__init__("Invalid email or password")


class AccountLockedError(AuthenticationError):
    """Account is locked due to failed login attempts"""
    def __init__(self, locked_until: str):
        super().__init__(
            f"Account is locked until {locked_until}",
            details={"locked_until": locked_until}
        )


# Authorization Errors
class AuthorizationError(BaseAPIException):
    """Insufficient permissions"""
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, status_code=403)


# Resource Errors
class ResourceNotFoundError(BaseAPIException):
    """Resource not found"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", status_code=404)


class ResourceAlreadyExistsError(BaseAPIException):
    """Resource already exists"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} already exists", status_code=409)


# Business Logic Errors
class BusinessLogicError(BaseAPIException):
    """Business logic error"""
    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class RateLimitExceededError(BaseAPIException):
    """Rate limit exceeded"""
    def __init__(self, message: str = "Rate limit exceeded. Please try again later.", retry_after: int = 0):
        super().__init__(message, status_code=429, details={"retry_after": retry_after})
