"""
GroupLedger - Repositories Package

Persistence collaborators for the consolidation engine.
"""
