"""
SQLAlchemy Base for ListLoop.

This module provides the declarative base for all SQLAlchemy models.

Usage:
    from src.models.base import Base

    class MyModel(Base):
        __tablename__ = "my_table"
        ...
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base shared by all learning loop tables."""


__all__ = ["Base"]
