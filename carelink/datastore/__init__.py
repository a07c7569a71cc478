"""
Persistent key/value storage backing the cache, offline queue and credentials.
"""

from carelink.datastore.engine import Database
from carelink.datastore.store import MemoryStore, PersistentStore, SQLStore

__all__ = ["Database", "MemoryStore", "PersistentStore", "SQLStore"]
