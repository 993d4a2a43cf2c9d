"""Base model with common fields"""

from datetime import datetime
from sqlalchemy import Column, Integer, TIMESTAMP
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class BaseModel(Base):
    """
    Abstract base model with common fields for mutable tables.

    Provides:
    - id: integer primary key
    - created_at: Timestamp of creation
    - updated_at: Timestamp of last update
    """
    __abstract__ = True

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        TIMESTAMP,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False
    )


def enum_values(enum_cls) -> list:
    """Persist str enums by value rather than by member name"""
    return [member.value for member in enum_cls]
