"""
Shared Kernel Module
====================

Shared infrastructure used by both bounded contexts (Assistant answer
pipeline and Suggestion lifecycle).

Architecture Pattern: Modular Monolith
- Each module (assistant, suggestions) is a bounded context
- Shared kernel contains only generic infrastructure

DO NOT add pipeline or suggestion logic to the shared kernel.
"""

__version__ = "1.0.0"
