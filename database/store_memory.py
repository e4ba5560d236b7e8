"""
In-memory stores — dict-backed, for development and testing.

Features:
  - Zero dependencies (no files, no database)
  - Full interface compatibility with the file-backed stores
  - One lock per store: reserve/confirm/release are atomic across threads
    and across interleaved asyncio tasks
  - All data lost on process restart

Entries are replaced, never mutated in place, so a shallow copy of a table is
a consistent snapshot. The file stores rely on that to roll back a write whose
flush failed.
"""
from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

import structlog

from database.store_base import BaseLifecycleStore, BaseReservationStore, BaseSendHistory
from models.schemas import (
    MessageType, PatientRecord, PatientStatus, ReservationState, ReserveResult,
    SentRecord, TagReservation, WaitingPatient,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Tag reservation ledger
# ──────────────────────────────────────────────────────────────

class InMemoryReservationStore(BaseReservationStore):

    def __init__(self):
        self._lock = threading.RLock()
        self._entries: dict[str, TagReservation] = {}     # tag → reservation

    def try_reserve(
        self, tag: str, patient_id: str, now: datetime,
        message_type: Optional[MessageType] = None,
    ) -> ReserveResult:
        with self._lock:
            existing = self._entries.get(tag)
            if existing is not None:
                if existing.state == ReservationState.CONFIRMED:
                    return ReserveResult.ALREADY_CONFIRMED
                return ReserveResult.ALREADY_RESERVED
            self._entries[tag] = TagReservation(
                tag=tag, patient_id=patient_id,
                message_type=message_type, reserved_at=now,
            )
            self._persist()
            return ReserveResult.RESERVED

    def confirm(self, tag: str, now: Optional[datetime] = None) -> bool:
        with self._lock:
            existing = self._entries.get(tag)
            if existing is None:
                return False
            if existing.state == ReservationState.CONFIRMED:
                return True
            self._entries[tag] = existing.model_copy(update={
                "state": ReservationState.CONFIRMED,
                "confirmed_at": now or _utcnow(),
            })
            self._persist()
            return True

    def release(self, tag: str) -> bool:
        with self._lock:
            existing = self._entries.get(tag)
            if existing is None or existing.state != ReservationState.RESERVED:
                return False
            del self._entries[tag]
            self._persist()
            return True

    def sweep_abandoned(self, now: datetime, timeout: timedelta) -> int:
        with self._lock:
            stale = [
                tag for tag, r in self._entries.items()
                if r.state == ReservationState.RESERVED and now - r.reserved_at > timeout
            ]
            if not stale:
                return 0
            for tag in stale:
                logger.warning("reservation_abandoned",
                               tag=tag, patient_id=self._entries[tag].patient_id,
                               reserved_at=self._entries[tag].reserved_at.isoformat())
                del self._entries[tag]
            self._persist()
            return len(stale)

    def get(self, tag: str) -> Optional[TagReservation]:
        with self._lock:
            return self._entries.get(tag)

    def prune_confirmed_older_than(self, cutoff: datetime) -> int:
        with self._lock:
            old = [
                tag for tag, r in self._entries.items()
                if r.state == ReservationState.CONFIRMED
                and (r.confirmed_at or r.reserved_at) < cutoff
            ]
            for tag in old:
                del self._entries[tag]
            if old:
                self._persist()
            return len(old)

    def stats(self) -> dict[str, int]:
        with self._lock:
            reserved = sum(1 for r in self._entries.values() if r.state == ReservationState.RESERVED)
            return {
                "reservations": len(self._entries),
                "reserved": reserved,
                "confirmed": len(self._entries) - reserved,
            }

    def _persist(self) -> None:
        """Hook for durable subclasses. Called with the lock held."""


# ──────────────────────────────────────────────────────────────
#  Patient lifecycle
# ──────────────────────────────────────────────────────────────

class InMemoryLifecycleStore(BaseLifecycleStore):

    def __init__(self):
        self._lock = threading.RLock()
        self._records: dict[str, PatientRecord] = {}      # patient id → record

    def upsert_waiting(self, patient: WaitingPatient, now: Optional[datetime] = None) -> PatientRecord:
        now = now or _utcnow()
        with self._lock:
            existing = self._records.get(patient.id)
            if existing is None:
                record = PatientRecord(
                    id=patient.id, name=patient.name, phone=patient.phone,
                    sector_id=patient.sector_id, channel_id=patient.channel_id,
                    wait_start=patient.wait_start,
                    first_seen=now, last_seen_waiting=now,
                )
            elif existing.wait_start is not None and existing.wait_start != patient.wait_start:
                # Same identity, different wait start: the patient came back.
                logger.info("patient_new_episode", patient_id=patient.id,
                            previous_wait_start=existing.wait_start.isoformat(),
                            wait_start=patient.wait_start.isoformat())
                record = PatientRecord(
                    id=patient.id, name=patient.name, phone=patient.phone,
                    sector_id=patient.sector_id, channel_id=patient.channel_id,
                    wait_start=patient.wait_start,
                    first_seen=now, last_seen_waiting=now,
                )
            else:
                record = existing.model_copy(update={
                    "name": patient.name or existing.name,
                    "phone": patient.phone or existing.phone,
                    "sector_id": patient.sector_id,
                    "channel_id": patient.channel_id,
                    "wait_start": patient.wait_start,
                    "last_seen_waiting": now,
                    "status": PatientStatus.WAITING,
                    "processed_at": None,
                })
            self._records[patient.id] = record
            self._persist()
            return record

    def mark_sent(self, patient_id: str, message_type: MessageType) -> bool:
        with self._lock:
            existing = self._records.get(patient_id)
            if existing is None:
                return False
            self._records[patient_id] = existing.model_copy(update={
                "sent_types": existing.sent_types | {message_type},
            })
            self._persist()
            return True

    def mark_processed(self, patient_id: str, now: Optional[datetime] = None) -> bool:
        with self._lock:
            existing = self._records.get(patient_id)
            if existing is None:
                return False
            if existing.status == PatientStatus.PROCESSED:
                return True
            self._records[patient_id] = existing.model_copy(update={
                "status": PatientStatus.PROCESSED,
                "processed_at": now or _utcnow(),
            })
            self._persist()
            return True

    def mark_absent(self, seen_ids: Iterable[str], now: Optional[datetime] = None) -> list[str]:
        now = now or _utcnow()
        seen = set(seen_ids)
        with self._lock:
            gone = [
                pid for pid, r in self._records.items()
                if r.status == PatientStatus.WAITING and pid not in seen
            ]
            for pid in gone:
                self._records[pid] = self._records[pid].model_copy(update={
                    "status": PatientStatus.PROCESSED,
                    "processed_at": now,
                })
            if gone:
                self._persist()
            return gone

    def get_already_sent(self, patient_id: str) -> set[MessageType]:
        with self._lock:
            record = self._records.get(patient_id)
            return set(record.sent_types) if record else set()

    def get(self, patient_id: str) -> Optional[PatientRecord]:
        with self._lock:
            return self._records.get(patient_id)

    def list_by_status(self, status: PatientStatus) -> list[PatientRecord]:
        with self._lock:
            return [r for r in self._records.values() if r.status == status]

    def prune_older_than(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        cutoff = (now or _utcnow()) - retention
        with self._lock:
            expired = [
                pid for pid, r in self._records.items()
                if r.status != PatientStatus.WAITING
                and (r.processed_at or r.last_seen_waiting) < cutoff
            ]
            for pid in expired:
                # Removed records leave the store entirely.
                del self._records[pid]
            if expired:
                self._persist()
                logger.info("patients_pruned", count=len(expired), cutoff=cutoff.isoformat())
            return len(expired)

    def stats(self) -> dict[str, int]:
        with self._lock:
            counts = {s.value: 0 for s in PatientStatus}
            for r in self._records.values():
                counts[r.status.value] += 1
            counts["patients"] = len(self._records)
            return counts

    def _persist(self) -> None:
        """Hook for durable subclasses. Called with the lock held."""


# ──────────────────────────────────────────────────────────────
#  Send history
# ──────────────────────────────────────────────────────────────

class InMemorySendHistory(BaseSendHistory):

    def __init__(self, max_entries: int = 10_000):
        self._lock = threading.RLock()
        self._entries: list[SentRecord] = []
        self.max_entries = max_entries

    def record(self, entry: SentRecord) -> None:
        with self._lock:
            self._entries = (self._entries + [entry])[-self.max_entries:]
            self._persist()

    def recent(self, limit: int = 100, patient_id: Optional[str] = None) -> list[SentRecord]:
        with self._lock:
            entries = self._entries
            if patient_id is not None:
                entries = [e for e in entries if e.patient_id == patient_id]
            return entries[-limit:]

    def prune_older_than(self, cutoff: datetime) -> int:
        with self._lock:
            kept = [e for e in self._entries if e.sent_at >= cutoff]
            removed = len(self._entries) - len(kept)
            if removed:
                self._entries = kept
                self._persist()
            return removed

    def counts_by_type(self, since: Optional[datetime] = None) -> dict[str, Any]:
        with self._lock:
            counts = {mt.value: 0 for mt in MessageType}
            for e in self._entries:
                if since is None or e.sent_at >= since:
                    counts[e.message_type.value] += 1
            counts["total"] = sum(counts.values())
            return counts

    def _persist(self) -> None:
        """Hook for durable subclasses. Called with the lock held."""
