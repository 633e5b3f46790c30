"""
Suggestions Interfaces Layer
============================

Interface adapters (controllers) for the suggestion lifecycle.
"""

from src.suggestions.interfaces.controllers import (
    router as conversations_router,
    system_router,
)

__all__ = ["conversations_router", "system_router"]
