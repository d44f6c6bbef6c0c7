"""
中间件模块
"""
from .access_logging import AccessLogMiddleware, REQUEST_ID_HEADER

__all__ = [
    "AccessLogMiddleware",
    "REQUEST_ID_HEADER",
]
