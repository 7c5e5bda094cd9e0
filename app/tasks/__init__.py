"""
GroupLedger - Background Tasks Package

Celery background tasks.
"""
