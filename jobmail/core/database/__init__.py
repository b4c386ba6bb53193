"""Database module for pipeline state and job applications"""
from .models import (
    Base, EmailPipeline, JobApplication, JobMessage, JobStatusHistory, InferenceCacheEntry,
)
from .connection import get_db, init_db, create_tables, drop_tables
from .repository import SqlAlchemyStateStore, SqlInferenceCacheBackend

__all__ = [
    'Base',
    'EmailPipeline',
    'JobApplication',
    'JobMessage',
    'JobStatusHistory',
    'InferenceCacheEntry',
    'get_db',
    'init_db',
    'create_tables',
    'drop_tables',
    'SqlAlchemyStateStore',
    'SqlInferenceCacheBackend',
]
