"""
Record stores.

The generator only needs a handful of keyed lookups, so every backend
implements the same small RecordStore interface: an in-memory store for
local runs and tests, and a Supabase-backed repository.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from supabase import Client

from hemogen.config import StorageConfig
from hemogen.db.client import get_client, is_configured
from hemogen.models import LabRecord

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
  """Raised when a backend fails to read or write records."""


class RecordStore(ABC):
  """Persistence interface used by the generator and delivery pipeline."""

  @abstractmethod
  def save(self, record: LabRecord) -> LabRecord:
    """Persist a new record and return the stored copy."""

  @abstractmethod
  def find_undelivered(self) -> list[LabRecord]:
    """All records not yet accepted by the sink."""

  @abstractmethod
  def find_by_subject(self, subject_id: str) -> list[LabRecord]:
    """All records for one subject."""

  @abstractmethod
  def find_by_id(self, record_id: str) -> Optional[LabRecord]:
    """One record by id, or None."""

  @abstractmethod
  def count(self) -> int:
    """Total number of stored records."""

  @abstractmethod
  def all(self) -> list[LabRecord]:
    """Every stored record."""

  @abstractmethod
  def mark_delivered(self, record_id: str, response_code: int, sent_at: datetime) -> None:
    """Flip a record's delivery status to sent."""

  def stats(self) -> dict[str, int]:
    """Total, sent and pending counts."""
    total = self.count()
    pending = len(self.find_undelivered())
    return {"total": total, "sent": total - pending, "pending": pending}


class InMemoryRecordStore(RecordStore):
  """
  Dict-backed store.

  Records are copied on the way in and out so callers never share mutable
  state with the store.
  """

  def __init__(self):
    self._records: dict[str, LabRecord] = {}
    self._lock = threading.Lock()

  def save(self, record: LabRecord) -> LabRecord:
    with self._lock:
      if record.id in self._records:
        raise StorageError(f"Record {record.id} already exists")
      self._records[record.id] = record.model_copy(deep=True)
    return record

  def find_undelivered(self) -> list[LabRecord]:
    with self._lock:
      return [r.model_copy(deep=True) for r in self._records.values() if not r.sent_to_api]

  def find_by_subject(self, subject_id: str) -> list[LabRecord]:
    with self._lock:
      return [r.model_copy(deep=True) for r in self._records.values() if r.subject_id == subject_id]

  def find_by_id(self, record_id: str) -> Optional[LabRecord]:
    with self._lock:
      record = self._records.get(record_id)
      return record.model_copy(deep=True) if record else None

  def count(self) -> int:
    with self._lock:
      return len(self._records)

  def all(self) -> list[LabRecord]:
    with self._lock:
      return [r.model_copy(deep=True) for r in self._records.values()]

  def mark_delivered(self, record_id: str, response_code: int, sent_at: datetime) -> None:
    with self._lock:
      record = self._records.get(record_id)
      if record is None:
        raise StorageError(f"Record {record_id} not found")
      record.sent_to_api = True
      record.sent_at = sent_at
      record.api_response_status = response_code


class SupabaseRecordRepository(RecordStore):
  """Record store backed by a Supabase table."""

  def __init__(self, client: Optional[Client] = None, table_name: str = "lab_records"):
    """
    Initialize repository with optional client.

    Args:
      client: Supabase client to use. If None, gets default client.
      table_name: Table holding one row per record.
    """
    self._client = client or get_client()
    self.table_name = table_name

  @property
  def table(self):
    """Get the table reference."""
    return self._client.table(self.table_name)

  def _to_row(self, record: LabRecord) -> dict:
    return record.model_dump(mode="json", exclude={"location"})

  def _from_rows(self, rows: Optional[list[dict[str, Any]]]) -> list[LabRecord]:
    return [LabRecord.model_validate(row) for row in rows or []]

  def save(self, record: LabRecord) -> LabRecord:
    try:
      response = self.table.insert(self._to_row(record)).execute()
    except Exception as e:
      raise StorageError(f"Failed to save record {record.id}: {e}") from e
    rows = self._from_rows(response.data)
    return rows[0] if rows else record

  def find_undelivered(self) -> list[LabRecord]:
    try:
      response = self.table.select("*").eq("sent_to_api", False).order("collected_at").execute()
    except Exception as e:
      raise StorageError(f"Failed to query undelivered records: {e}") from e
    return self._from_rows(response.data)

  def find_by_subject(self, subject_id: str) -> list[LabRecord]:
    try:
      response = self.table.select("*").eq("subject_id", subject_id).order("collected_at").execute()
    except Exception as e:
      raise StorageError(f"Failed to query subject {subject_id}: {e}") from e
    return self._from_rows(response.data)

  def find_by_id(self, record_id: str) -> Optional[LabRecord]:
    try:
      response = self.table.select("*").eq("id", record_id).limit(1).execute()
    except Exception as e:
      raise StorageError(f"Failed to load record {record_id}: {e}") from e
    rows = self._from_rows(response.data)
    return rows[0] if rows else None

  def count(self) -> int:
    try:
      response = self.table.select("id", count="exact").limit(1).execute()
    except Exception as e:
      raise StorageError(f"Failed to count records: {e}") from e
    return response.count or 0

  def all(self) -> list[LabRecord]:
    try:
      response = self.table.select("*").order("created_at").execute()
    except Exception as e:
      raise StorageError(f"Failed to list records: {e}") from e
    return self._from_rows(response.data)

  def mark_delivered(self, record_id: str, response_code: int, sent_at: datetime) -> None:
    data = {
      "sent_to_api": True,
      "sent_at": sent_at.isoformat(),
      "api_response_status": response_code,
    }
    try:
      self.table.update(data).eq("id", record_id).execute()
    except Exception as e:
      raise StorageError(f"Failed to mark record {record_id} as sent: {e}") from e


def create_record_store(config: StorageConfig) -> RecordStore:
  """Build the configured store, falling back to memory when Supabase is unset."""
  if config.backend == "supabase":
    if is_configured():
      return SupabaseRecordRepository(table_name=config.table)
    logger.warning("Supabase storage requested but SUPABASE_URL/SUPABASE_SERVICE_KEY not set. Using memory.")
  return InMemoryRecordStore()
