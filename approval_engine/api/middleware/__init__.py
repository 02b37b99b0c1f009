"""
API Middleware

Modules:
    - correlation: Request correlation ID middleware
    - error_handlers: Exception handlers for domain and validation errors
"""
from .correlation import CorrelationIdMiddleware
from .error_handlers import register_error_handlers

__all__ = ["CorrelationIdMiddleware", "register_error_handlers"]
