from .base import RecordStore
from .memory import InMemoryRecordStore
from .sql import SQLRecordStore

__all__ = ["RecordStore", "InMemoryRecordStore", "SQLRecordStore"]
