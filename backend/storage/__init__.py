# storage/__init__.py
# ============================================================================
# BILLING ENGINE — STORAGE MODULE
# ============================================================================
# Record store contract and the in-memory implementation
# ============================================================================

from storage.record_store import (
    Collection,
    RecordStore,
    InMemoryRecordStore,
    matches,
)

__all__ = [
    "Collection",
    "RecordStore",
    "InMemoryRecordStore",
    "matches",
]
