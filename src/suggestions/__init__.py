"""
Suggestions Module
==================

Bounded Context for delivering generated answers to human agents.

Responsibilities:
- Issue a superseding generation token per conversation on every
  qualifying customer message and every agent reply
- Run the answer pipeline in the background and keep results by token
- Deliver a result only while its token is still current
- Route customer messages by system mode (hitl, autopilot, off)
- Agent-side polling with backoff, cancellation and recovery
"""

__version__ = "1.0.0"
