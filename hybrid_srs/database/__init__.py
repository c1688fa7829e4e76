"""
Database Module

SQLAlchemy declarative base, ORM tables and async engine management for the
persistent storage backend.
"""

from hybrid_srs.database.base import Base, metadata

__all__ = ["Base", "metadata"]
