"""
API Middleware Module

    - correlation: request correlation id and access log line
    - error_handlers: DomainError and validation error envelopes
"""

from .correlation import CorrelationIdMiddleware
from .error_handlers import register_error_handlers

__all__ = ["CorrelationIdMiddleware", "register_error_handlers"]
