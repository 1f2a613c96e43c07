"""
Listen2Me - Core Package
========================

Configuration, persistence and the ingestion/analysis pipeline.
"""

from listen2me.core.config import settings
from listen2me.core.database import Base, get_db_session

__all__ = ["Base", "get_db_session", "settings"]
