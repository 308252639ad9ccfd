"""
HTTP middleware.
"""

from taskflow.api.middleware.request_id import RequestIdMiddleware

__all__ = [
    "RequestIdMiddleware",
]
