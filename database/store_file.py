"""
File-backed stores — JSON files on disk with persistence across restarts.

Data layout:
  {data_dir}/
    reservations.json     tag → reservation
    patients.json         patient id → lifecycle record
    history.json          [confirmed sends]
    backup_<timestamp>/   copies made by backup_data_dir()

Features:
  - Survives process restarts: a confirmed tag is never re-sent after a crash
  - Every mutation flushes its collection (write to .tmp, then rename)
  - A failed flush rolls the in-memory change back and raises PersistenceError,
    so memory never claims something the disk does not have
  - An unreadable reservations.json or patients.json refuses to load
    (PersistenceError); only history.json is set aside and restarted empty
  - Single-process only (one live instance is an operational invariant)

Best for: small deployments, demos, single-clinic installs.
"""
from __future__ import annotations

import json
import os
import shutil
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

import structlog
from pydantic import ValidationError

from database.store_base import PersistenceError
from database.store_memory import (
    InMemoryLifecycleStore, InMemoryReservationStore, InMemorySendHistory,
)
from models.schemas import (
    MessageType, PatientRecord, ReserveResult, SentRecord, TagReservation, WaitingPatient,
)

logger = structlog.get_logger()

COLLECTIONS = ("reservations", "patients", "history")


class JsonCollectionFile:
    """
    One JSON document on disk, written atomically.

    A file that cannot be decoded raises PersistenceError on load, unless the
    collection is `disposable`: then it is moved to `.corrupt` and loaded empty.
    Only reporting collections may be disposable; losing the ledger would re-send.
    """

    def __init__(self, data_dir: Path, collection: str, disposable: bool = False):
        self.collection = collection
        self.path = Path(data_dir) / f"{collection}.json"
        self.disposable = disposable

    def load(self, default: Any) -> Any:
        if not self.path.exists():
            return default
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            if not self.disposable:
                logger.error("file_store_load_error", collection=self.collection,
                             path=str(self.path), error=str(e))
                raise PersistenceError(
                    f"cannot decode {self.path}: {e}; restore it from a backup",
                    collection=self.collection,
                ) from e
            # Keep the damaged file for inspection and start this collection empty.
            corrupt = self.path.with_suffix(".corrupt")
            self.path.replace(corrupt)
            logger.error("file_store_load_error", collection=self.collection,
                         error=str(e), moved_to=str(corrupt))
            return default
        except OSError as e:
            raise PersistenceError(
                f"could not read {self.path}: {e}", collection=self.collection,
            ) from e

    def save(self, data: Any) -> None:
        tmp_path = self.path.with_suffix(".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())
            tmp_path.replace(self.path)   # atomic on POSIX
        except (OSError, TypeError, ValueError) as e:
            logger.error("file_store_flush_failed", collection=self.collection, error=str(e))
            raise PersistenceError(
                f"could not write {self.path}: {e}", collection=self.collection,
            ) from e


class _RollbackMixin:
    """Restores the in-memory table when the flush of a mutation fails."""

    def _snapshot(self) -> Any:
        raise NotImplementedError

    def _restore(self, saved: Any) -> None:
        raise NotImplementedError

    @contextmanager
    def _rollback_on_failure(self):
        with self._lock:
            saved = self._snapshot()
            try:
                yield
            except PersistenceError:
                self._restore(saved)
                raise


# ──────────────────────────────────────────────────────────────
#  Reservations
# ──────────────────────────────────────────────────────────────

class FileReservationStore(_RollbackMixin, InMemoryReservationStore):

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._file = JsonCollectionFile(self._data_dir, "reservations")
        for tag, raw in self._file.load({}).items():
            try:
                self._entries[tag] = TagReservation.model_validate(raw)
            except ValidationError as e:
                logger.warning("reservation_record_invalid", tag=tag, error=str(e))
        logger.info("file_reservation_store_loaded",
                    data_dir=str(self._data_dir), records=len(self._entries))

    def _snapshot(self) -> dict[str, TagReservation]:
        return dict(self._entries)

    def _restore(self, saved: dict[str, TagReservation]) -> None:
        self._entries = saved

    def _persist(self) -> None:
        self._file.save({tag: r.model_dump(mode="json") for tag, r in self._entries.items()})

    def try_reserve(
        self, tag: str, patient_id: str, now: datetime,
        message_type: Optional[MessageType] = None,
    ) -> ReserveResult:
        with self._rollback_on_failure():
            return super().try_reserve(tag, patient_id, now, message_type)

    def confirm(self, tag: str, now: Optional[datetime] = None) -> bool:
        with self._rollback_on_failure():
            return super().confirm(tag, now)

    def release(self, tag: str) -> bool:
        with self._rollback_on_failure():
            return super().release(tag)

    def sweep_abandoned(self, now: datetime, timeout: timedelta) -> int:
        with self._rollback_on_failure():
            return super().sweep_abandoned(now, timeout)

    def prune_confirmed_older_than(self, cutoff: datetime) -> int:
        with self._rollback_on_failure():
            return super().prune_confirmed_older_than(cutoff)


# ──────────────────────────────────────────────────────────────
#  Patient lifecycle
# ──────────────────────────────────────────────────────────────

class FileLifecycleStore(_RollbackMixin, InMemoryLifecycleStore):

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._file = JsonCollectionFile(self._data_dir, "patients")
        for pid, raw in self._file.load({}).items():
            try:
                self._records[pid] = PatientRecord.model_validate(raw)
            except ValidationError as e:
                logger.warning("patient_record_invalid", patient_id=pid, error=str(e))
        logger.info("file_lifecycle_store_loaded",
                    data_dir=str(self._data_dir), records=len(self._records))

    def _snapshot(self) -> dict[str, PatientRecord]:
        return dict(self._records)

    def _restore(self, saved: dict[str, PatientRecord]) -> None:
        self._records = saved

    def _persist(self) -> None:
        self._file.save({pid: r.model_dump(mode="json") for pid, r in self._records.items()})

    def upsert_waiting(self, patient: WaitingPatient, now: Optional[datetime] = None) -> PatientRecord:
        with self._rollback_on_failure():
            return super().upsert_waiting(patient, now)

    def mark_sent(self, patient_id: str, message_type: MessageType) -> bool:
        with self._rollback_on_failure():
            return super().mark_sent(patient_id, message_type)

    def mark_processed(self, patient_id: str, now: Optional[datetime] = None) -> bool:
        with self._rollback_on_failure():
            return super().mark_processed(patient_id, now)

    def mark_absent(self, seen_ids: Iterable[str], now: Optional[datetime] = None) -> list[str]:
        with self._rollback_on_failure():
            return super().mark_absent(seen_ids, now)

    def prune_older_than(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        with self._rollback_on_failure():
            return super().prune_older_than(retention, now)


# ──────────────────────────────────────────────────────────────
#  Send history
# ──────────────────────────────────────────────────────────────

class FileSendHistory(_RollbackMixin, InMemorySendHistory):

    def __init__(self, data_dir: str = "./data", max_entries: int = 10_000):
        super().__init__(max_entries=max_entries)
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._file = JsonCollectionFile(self._data_dir, "history", disposable=True)
        loaded = []
        for raw in self._file.load([]):
            try:
                loaded.append(SentRecord.model_validate(raw))
            except ValidationError as e:
                logger.warning("history_record_invalid", error=str(e))
        self._entries = loaded[-self.max_entries:]

    def _snapshot(self) -> list[SentRecord]:
        return list(self._entries)

    def _restore(self, saved: list[SentRecord]) -> None:
        self._entries = saved

    def _persist(self) -> None:
        self._file.save([e.model_dump(mode="json") for e in self._entries])

    def record(self, entry: SentRecord) -> None:
        with self._rollback_on_failure():
            super().record(entry)

    def prune_older_than(self, cutoff: datetime) -> int:
        with self._rollback_on_failure():
            return super().prune_older_than(cutoff)


# ──────────────────────────────────────────────────────────────
#  Backup
# ──────────────────────────────────────────────────────────────

def backup_data_dir(data_dir: str, now: Optional[datetime] = None) -> Optional[Path]:
    """Copy every collection file into {data_dir}/backup_<timestamp>/."""
    src = Path(data_dir)
    files = [src / f"{c}.json" for c in COLLECTIONS if (src / f"{c}.json").exists()]
    if not files:
        logger.info("backup_skipped", data_dir=str(src), reason="no data files")
        return None
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%S")
    dest = src / f"backup_{stamp}"
    dest.mkdir(parents=True, exist_ok=True)
    for path in files:
        shutil.copy2(path, dest / path.name)
    logger.info("backup_created", path=str(dest), files=len(files))
    return dest
