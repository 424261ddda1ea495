"""Database models and storage layer."""

from .database import Base, Database, create_database_engine
from .models import RunCheckpointModel

__all__ = [
    "Base",
    "Database",
    "create_database_engine",
    "RunCheckpointModel",
]
