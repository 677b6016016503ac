# servicekit/routers/__init__.py
"""
FastAPI routers for servicekit.

Importing this module does not create an application instance.
"""

from __future__ import annotations

from .system import router as system_router

__all__ = ["system_router"]
