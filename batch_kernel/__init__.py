"""
Batch Kernel - shared infrastructure for chunked batch jobs.

Provides the pieces every batch job leans on:
- Structured JSON logging with job-scoped context
- Typed exception hierarchy with machine-readable codes
- Injectable clock for deterministic runs
- SQLAlchemy declarative base and session helpers
- Deterministic hashing for job identity
"""

__version__ = "0.1.0"
