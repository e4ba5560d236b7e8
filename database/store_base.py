"""
Abstract stores — interfaces for the notifier's durable state.

Three collections, each behind its own interface:
  - BaseReservationStore  tag ledger; authoritative for "is this slot locked"
  - BaseLifecycleStore    patient records; authoritative for "what was received"
  - BaseSendHistory       confirmed-send log; reporting only

Implementations:
  - InMemory*  (dicts + one lock per store, single process, no persistence)
  - File*      (JSON files on disk, single process, durable)

All methods are synchronous and non-blocking apart from the file flush; the
dispatch coordinator calls them directly from the event loop. Each store
serializes its own writes, so calls from several threads are safe too.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from models.schemas import (
    MessageType, PatientRecord, PatientStatus, ReserveResult,
    SentRecord, TagReservation, WaitingPatient,
)


class PersistenceError(Exception):
    """A store could not durably record a change. The change was rolled back."""

    def __init__(self, message: str, collection: str = ""):
        self.collection = collection
        super().__init__(message)


class BaseReservationStore(ABC):
    """Deduplication ledger. `try_reserve` must be atomic per tag."""

    @abstractmethod
    def try_reserve(
        self, tag: str, patient_id: str, now: datetime,
        message_type: Optional[MessageType] = None,
    ) -> ReserveResult:
        ...

    @abstractmethod
    def confirm(self, tag: str, now: Optional[datetime] = None) -> bool:
        """Reserved → Confirmed. Idempotent. False if the tag is unknown."""
        ...

    @abstractmethod
    def release(self, tag: str) -> bool:
        """Delete a Reserved entry. False if unknown or already confirmed."""
        ...

    @abstractmethod
    def sweep_abandoned(self, now: datetime, timeout: timedelta) -> int:
        """Release Reserved entries older than `timeout`. Returns how many."""
        ...

    @abstractmethod
    def get(self, tag: str) -> Optional[TagReservation]:
        ...

    @abstractmethod
    def prune_confirmed_older_than(self, cutoff: datetime) -> int:
        ...

    @abstractmethod
    def stats(self) -> dict[str, int]:
        ...


class BaseLifecycleStore(ABC):
    """What we know about each patient across ticks."""

    @abstractmethod
    def upsert_waiting(self, patient: WaitingPatient, now: Optional[datetime] = None) -> PatientRecord:
        ...

    @abstractmethod
    def mark_sent(self, patient_id: str, message_type: MessageType) -> bool:
        ...

    @abstractmethod
    def mark_processed(self, patient_id: str, now: Optional[datetime] = None) -> bool:
        ...

    @abstractmethod
    def mark_absent(self, seen_ids: Iterable[str], now: Optional[datetime] = None) -> list[str]:
        """Every Waiting record not in `seen_ids` becomes Processed. Returns their ids."""
        ...

    @abstractmethod
    def get_already_sent(self, patient_id: str) -> set[MessageType]:
        ...

    @abstractmethod
    def get(self, patient_id: str) -> Optional[PatientRecord]:
        ...

    @abstractmethod
    def list_by_status(self, status: PatientStatus) -> list[PatientRecord]:
        ...

    @abstractmethod
    def prune_older_than(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        ...

    @abstractmethod
    def stats(self) -> dict[str, int]:
        ...


class BaseSendHistory(ABC):
    """Append-mostly log of confirmed sends."""

    @abstractmethod
    def record(self, entry: SentRecord) -> None:
        ...

    @abstractmethod
    def recent(self, limit: int = 100, patient_id: Optional[str] = None) -> list[SentRecord]:
        ...

    @abstractmethod
    def prune_older_than(self, cutoff: datetime) -> int:
        ...

    @abstractmethod
    def counts_by_type(self, since: Optional[datetime] = None) -> dict[str, Any]:
        ...
