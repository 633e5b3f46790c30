"""
Assistant Interfaces Layer
==========================

Interface adapters (controllers) for the answer pipeline.
"""

from src.assistant.interfaces.controllers import router as assistant_router

__all__ = ["assistant_router"]
