"""
Database module for hemogen.

Provides the record stores.
"""

from hemogen.db.repositories import (
  RecordStore,
  InMemoryRecordStore,
  SupabaseRecordRepository,
  StorageError,
  create_record_store,
)

__all__ = [
  "RecordStore",
  "InMemoryRecordStore",
  "SupabaseRecordRepository",
  "StorageError",
  "create_record_store",
]
