"""
Authorized request layer with single-flight credential refresh.
"""

from .coordinator import RequestCoordinator, DEFAULT_EXEMPT_PATHS

__all__ = ["RequestCoordinator", "DEFAULT_EXEMPT_PATHS"]
