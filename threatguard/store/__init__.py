from .base import SecurityStore, StoreError
from .memory import InMemoryStore
from .sql import SqlStore

__all__ = ["InMemoryStore", "SecurityStore", "SqlStore", "StoreError"]
