# servicekit/core/__init__.py
"""
Core utilities for servicekit.

This subpackage groups logging, the Redis connection, the receiving-side
trust guard and the FastAPI exception handlers.
"""

from __future__ import annotations

from .handlers import register_exception_handlers
from .logging import get_logger, setup_logging
from .redis import RedisManager
from .security import internal_request_guard, parse_caller_identity

__all__ = [
    # logging
    "get_logger",
    "setup_logging",
    # redis
    "RedisManager",
    # security
    "internal_request_guard",
    "parse_caller_identity",
    # handlers
    "register_exception_handlers",
]
