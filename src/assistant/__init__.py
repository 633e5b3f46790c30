"""
Assistant Module
================

Bounded Context for answering citizen questions with retrieval-augmented
generation.

Responsibilities:
- Rewrite follow-up questions using the conversation so far
- Retrieve knowledge-base passages for the question
- Render passages into a deterministic context block
- Generate a grounded answer under a deadline
- Attribute sources and record a per-stage debug trace
"""

__version__ = "1.0.0"
