"""Record storage for Eras."""

from eras.storage.kv_store import KeyValueStore, SQLiteKeyValueStore, get_kv_store

__all__ = ["KeyValueStore", "SQLiteKeyValueStore", "get_kv_store"]
