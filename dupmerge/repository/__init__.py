"""Record repositories: the interface and two reference implementations."""

from .base import MergeResult, Page, RecordRepository
from .memory import InMemoryRepository
from .sqlite_adapter import SqliteRepository

__all__ = [
    'MergeResult',
    'Page',
    'RecordRepository',
    'InMemoryRepository',
    'SqliteRepository',
]
