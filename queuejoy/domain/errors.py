"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""

    error_code: str = "domain_error"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to API response dict"""
        body: Dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            body["details"] = self.details
        return body


# Input Errors
class ValidationError(DomainError):
    """Missing or malformed input"""
    error_code = "invalid_input"
    http_status = 400


class InvalidSlugError(ValidationError):
    """Slug missing or normalized to nothing"""
    error_code = "invalid_slug"


# Authorization Errors
class UnauthorizedError(DomainError):
    """Missing or invalid master key / operator PIN"""
    error_code = "unauthorized"
    http_status = 403


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "not_found"
    http_status = 404


class TenantNotFoundError(NotFoundError):
    """Tenant namespace does not exist"""
    error_code = "tenant_not_found"


class CounterNotFoundError(NotFoundError):
    """Counter does not exist in tenant"""
    error_code = "counter_not_found"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict"""
    error_code = "conflict"
    http_status = 409


class SlugExistsError(ConflictError):
    """Tenant slug already reserved"""
    error_code = "slug_exists"


# Start token errors (user-visible through the bot)
class TokenError(DomainError):
    """Start token could not be used"""
    error_code = "token_error"
    http_status = 400


class InvalidTokenError(TokenError):
    """Token is syntactically unparseable or already bound elsewhere"""
    error_code = "invalid_token"


class ExpiredTokenError(TokenError):
    """Token is past its expiresAt"""
    error_code = "expired_token"


class NoMatchError(TokenError):
    """Token parsed but no queue entry matched"""
    error_code = "no_match"
    http_status = 404


# Upstream / persistence errors
class ExternalServiceError(DomainError):
    """External service failure"""
    error_code = "upstream_error"
    http_status = 502


class TransientUpstreamError(ExternalServiceError):
    """Network error or 5xx from the database or Telegram, retries exhausted"""
    error_code = "transient_upstream"


class DatabaseError(ExternalServiceError):
    """Realtime database rejected the request"""
    error_code = "db_error"
    http_status = 500


class TelegramError(ExternalServiceError):
    """Telegram Bot API error"""
    error_code = "telegram_error"


class PersistencePartialError(DomainError):
    """State changed in memory but the batched tenant patch failed"""
    error_code = "persistence_partial"
    http_status = 500


# Configuration
class ServerMisconfiguredError(DomainError):
    """Missing credentials or configuration on the server"""
    error_code = "server_misconfigured"
    http_status = 500
