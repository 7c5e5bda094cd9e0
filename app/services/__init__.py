"""
GroupLedger - Services Package

Business logic services.
"""
