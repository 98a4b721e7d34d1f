"""Database-agnostic type definitions for SQLAlchemy models.

This module provides type definitions that work with both SQLite and PostgreSQL.
"""
from sqlalchemy import JSON, Numeric, Uuid

# Use JSON instead of JSONB for cross-database compatibility
# JSONB is PostgreSQL-specific, JSON works with both SQLite and PostgreSQL
JSONType = JSON

# Native UUID on PostgreSQL, CHAR(32) elsewhere
UUIDType = Uuid

# Money columns: two-decimal precision, returned as Decimal
MoneyType = Numeric(12, 2, asdecimal=True)

# Percentage rates such as 2.125
RateType = Numeric(7, 4, asdecimal=True)
