from .memory import MemoryBackend
from .sqlite import SQLiteBackend, SQLiteNotificationNotifier, sqlite_backend

__all__ = ["MemoryBackend", "SQLiteBackend", "SQLiteNotificationNotifier", "sqlite_backend"]
