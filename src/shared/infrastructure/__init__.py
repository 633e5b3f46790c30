"""
Infrastructure Layer
=====================

Cross-cutting technical concerns shared by the bounded contexts:
- Structured JSON logging
- Latency measurement
"""
