"""
Middleware modules for FastAPI request processing.

- Request ID propagation and structured request/response logging
"""

from .logging import RequestLoggingMiddleware

__all__ = ["RequestLoggingMiddleware"]
