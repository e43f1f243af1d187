from .base import Store, UnitOfWork
from .memory import MemoryStore
from .postgres import PostgresStore

__all__ = ["MemoryStore", "PostgresStore", "Store", "UnitOfWork"]
