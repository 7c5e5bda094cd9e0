"""
GroupLedger - Routers Package

FastAPI route handlers.

Routers:
- consolidation: Consolidation groups, elimination rules, runs and reports
"""

from app.routers import consolidation

__all__ = ["consolidation"]
