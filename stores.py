# stores.py
# -----------------------------------------------------------------------------
# Key-value persistence for subjects, notes, quizzes and attempt history.
# - Each collection is ONE JSON array under ONE well-known key (no indexing)
# - Filtering happens in memory after full deserialization
# - Read-modify-write; concurrent writers in other processes can race
# - Backends: in-memory (tests/dev) and Postgres (one jsonb row per key)
# -----------------------------------------------------------------------------

import copy
import json
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from errors import PersistenceFailure

ATTEMPTS_KEY = "studySmartsExamHistory"
SUBJECTS_KEY = "studySmartsSubjects"
NOTES_KEY = "studySmartsNotes"
QUIZZES_KEY = "studySmartsQuizzes"

ATTEMPT_TYPES = ("Exam", "Quiz")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


# -----------------------------------------------------------------------------
# Backends
# -----------------------------------------------------------------------------
class MemoryKVStore:
    """Process-local stand-in for browser local storage: keys map to JSON text."""

    def __init__(self, quota_bytes: Optional[int] = None):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.quota_bytes = quota_bytes

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            if self.quota_bytes is not None:
                used = sum(len(v.encode("utf-8")) for k, v in self._data.items() if k != key)
                if used + len(value.encode("utf-8")) > self.quota_bytes:
                    raise PersistenceFailure("Storage quota exceeded.")
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class PostgresKVStore:
    """One row per key in public.study_kv; value is the whole JSON document."""

    def __init__(self, fetch_one: Callable, execute: Callable):
        self._fetch_one = fetch_one
        self._execute = execute
        self._table_ready = False

    def _ensure_table(self):
        if self._table_ready:
            return
        try:
            self._execute("""
                CREATE TABLE IF NOT EXISTS public.study_kv (
                    key        TEXT PRIMARY KEY,
                    value      JSONB NOT NULL DEFAULT '[]'::jsonb,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
            """, ())
        except Exception as e:
            raise PersistenceFailure(f"Could not prepare storage: {e}") from e
        self._table_ready = True

    def get(self, key: str) -> Optional[str]:
        self._ensure_table()
        try:
            row = self._fetch_one("SELECT value::text AS value FROM public.study_kv WHERE key = %s;", (key,))
        except Exception as e:
            raise PersistenceFailure(f"Could not read '{key}': {e}") from e
        value = (row or {}).get("value")
        if value is not None and not isinstance(value, str):
            value = json.dumps(value)
        return value

    def set(self, key: str, value: str) -> None:
        self._ensure_table()
        try:
            self._execute("""
                INSERT INTO public.study_kv (key, value, updated_at)
                VALUES (%s, %s::jsonb, now())
                ON CONFLICT (key) DO UPDATE
                   SET value = EXCLUDED.value, updated_at = now();
            """, (key, value))
        except Exception as e:
            raise PersistenceFailure(f"Could not save '{key}': {e}") from e

    def delete(self, key: str) -> None:
        self._ensure_table()
        try:
            self._execute("DELETE FROM public.study_kv WHERE key = %s;", (key,))
        except Exception as e:
            raise PersistenceFailure(f"Could not delete '{key}': {e}") from e


# -----------------------------------------------------------------------------
# Collections
# -----------------------------------------------------------------------------
class RecordStore:
    """Ordered list of dict records serialized under a single key, scanned by id."""

    def __init__(self, kv, key: str):
        self.kv = kv
        self.key = key
        self._lock = threading.RLock()

    def load(self) -> List[Dict[str, Any]]:
        raw = self.kv.get(self.key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise PersistenceFailure(f"Stored data under '{self.key}' is corrupt: {e}") from e
        if not isinstance(data, list):
            raise PersistenceFailure(f"Stored data under '{self.key}' is not a list.")
        return [r for r in data if isinstance(r, dict)]

    def save(self, records: Iterable[Dict[str, Any]]) -> None:
        try:
            payload = json.dumps(list(records), ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise PersistenceFailure(f"Record is not JSON-serializable: {e}") from e
        self.kv.set(self.key, payload)

    def list_all(self) -> List[Dict[str, Any]]:
        return self.load()

    def list_by_subject(self, subject_id: str) -> List[Dict[str, Any]]:
        return [r for r in self.load() if str(r.get("subjectId")) == str(subject_id)]

    def find(self, record_id: str) -> Optional[Dict[str, Any]]:
        for r in self.load():
            if str(r.get("id")) == str(record_id):
                return r
        return None

    def add(self, record: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            records = self.load()
            records.append(copy.deepcopy(record))
            self.save(records)
        return record

    def update(self, record_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            records = self.load()
            for r in records:
                if str(r.get("id")) == str(record_id):
                    r.update(copy.deepcopy(changes))
                    self.save(records)
                    return r
        return None

    def delete(self, record_id: str) -> bool:
        with self._lock:
            records = self.load()
            for i, r in enumerate(records):
                if str(r.get("id")) == str(record_id):
                    del records[i]
                    self.save(records)
                    return True
        return False


def _id_sort_key(value: Any):
    s = str(value or "")
    return (1, int(s)) if s.isdigit() else (0, 0)


class AttemptStore(RecordStore):
    """Exam and quiz attempt history."""

    def __init__(self, kv, key: str = ATTEMPTS_KEY):
        super().__init__(kv, key)

    def append(self, attempt: Dict[str, Any]) -> str:
        """Store the attempt; its id is bumped past the largest stored id on collision. Returns the id."""
        with self._lock:
            records = self.load()
            taken = {str(r.get("id")) for r in records}
            attempt_id = str(attempt.get("id") or "")
            if not attempt_id or attempt_id in taken:
                numeric = [int(i) for i in taken if i.isdigit()]
                base = int(attempt_id) if attempt_id.isdigit() else 0
                attempt_id = str(max([base] + numeric) + 1)
            attempt["id"] = attempt_id
            records.append(copy.deepcopy(attempt))
            self.save(records)
        return attempt_id

    def list_by_subject_and_type(self, subject_id: Optional[str], attempt_type: Optional[str]) -> List[Dict[str, Any]]:
        rows = self.load()
        if subject_id is not None:
            rows = [r for r in rows if str(r.get("subjectId")) == str(subject_id)]
        if attempt_type is not None:
            rows = [r for r in rows if r.get("type") == attempt_type]
        return sorted(rows, key=lambda r: (str(r.get("date") or ""), _id_sort_key(r.get("id"))), reverse=True)

    def find_by_id(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        return self.find(attempt_id)

    def delete_by_id(self, attempt_id: str) -> bool:
        return self.delete(attempt_id)

    def update_extra_readings(self, attempt_id: str, readings: List[Dict[str, str]]) -> bool:
        return self.update(attempt_id, {"extraReadings": list(readings)}) is not None


class SubjectStore(RecordStore):
    def __init__(self, kv, key: str = SUBJECTS_KEY):
        super().__init__(kv, key)

    def create(self, name: str) -> Dict[str, Any]:
        subject = {"id": uuid.uuid4().hex, "name": name.strip(), "createdAt": utc_now_iso()}
        return self.add(subject)


class NoteStore(RecordStore):
    def __init__(self, kv, key: str = NOTES_KEY):
        super().__init__(kv, key)


class QuizStore(RecordStore):
    def __init__(self, kv, key: str = QUIZZES_KEY):
        super().__init__(kv, key)


__all__ = [
    "MemoryKVStore", "PostgresKVStore", "RecordStore", "AttemptStore", "SubjectStore",
    "NoteStore", "QuizStore", "ATTEMPT_TYPES", "utc_now_iso",
]
