"""
Core data models for the waiting-room notifier.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_HHMM = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    """Naive datetimes coming from the queue source are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageType(str, Enum):
    THIRTY_MINUTE = "thirty_minute"
    END_OF_DAY = "end_of_day"


class ChannelKind(str, Enum):
    NORMAL = "normal"
    OFFICIAL_API = "api_oficial"


class ReservationState(str, Enum):
    RESERVED = "reserved"
    CONFIRMED = "confirmed"


class ReserveResult(str, Enum):
    RESERVED = "reserved"
    ALREADY_RESERVED = "already_reserved"
    ALREADY_CONFIRMED = "already_confirmed"


class PatientStatus(str, Enum):
    WAITING = "waiting"
    PROCESSED = "processed"
    REMOVED = "removed"


# ──────────────────────────────────────────────────────────────
#  WaitingPatient — one row of the queue snapshot
# ──────────────────────────────────────────────────────────────

class WaitingPatient(BaseModel):
    """A chat waiting in the triage queue, as reported by the queue source."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)             # stable for one waiting episode
    name: str = ""
    phone: str = ""
    sector_id: str = ""
    sector_name: str = ""
    channel_id: str = ""
    channel_type: ChannelKind = ChannelKind.NORMAL
    wait_start: datetime

    @field_validator("wait_start")
    @classmethod
    def _aware_wait_start(cls, v: datetime) -> datetime:
        return _as_aware(v)

    def wait_minutes(self, now: datetime) -> int:
        """Whole minutes waited so far; 0 if the clock says we are before wait_start."""
        elapsed = (_as_aware(now) - self.wait_start).total_seconds() / 60
        return max(0, math.floor(elapsed))


# ──────────────────────────────────────────────────────────────
#  Deduplication ledger
# ──────────────────────────────────────────────────────────────

class TagReservation(BaseModel):
    """A claim on one (patient, message type, day) dispatch slot."""
    tag: str
    state: ReservationState = ReservationState.RESERVED
    patient_id: str
    message_type: Optional[MessageType] = None
    reserved_at: datetime
    confirmed_at: Optional[datetime] = None


# ──────────────────────────────────────────────────────────────
#  Patient lifecycle
# ──────────────────────────────────────────────────────────────

class PatientRecord(BaseModel):
    """
    Lifecycle of one patient id. Stored records are only ever `waiting` or
    `processed`: `removed` names the retention exit, and a removed record is
    deleted from the store rather than kept with that status.
    """
    id: str
    name: str = ""
    phone: str = ""
    sector_id: str = ""
    channel_id: str = ""
    wait_start: Optional[datetime] = None
    first_seen: datetime = Field(default_factory=_utcnow)
    last_seen_waiting: datetime = Field(default_factory=_utcnow)
    status: PatientStatus = PatientStatus.WAITING
    sent_types: set[MessageType] = Field(default_factory=set)
    processed_at: Optional[datetime] = None


class SentRecord(BaseModel):
    """History entry for a confirmed send. Reporting only, never used for dedup."""
    patient_id: str
    message_type: MessageType
    tag: str
    sent_at: datetime = Field(default_factory=_utcnow)
    patient_name: str = ""
    channel_id: str = ""


class SendResult(BaseModel):
    """What the sender reports back for one dispatch attempt."""
    success: bool
    reason: str = ""
    status_code: Optional[int] = None
    message_id: str = ""

    @classmethod
    def ok(cls, message_id: str = "", status_code: Optional[int] = None) -> SendResult:
        return cls(success=True, message_id=message_id, status_code=status_code)

    @classmethod
    def failed(cls, reason: str, status_code: Optional[int] = None) -> SendResult:
        return cls(success=False, reason=reason, status_code=status_code)


# ──────────────────────────────────────────────────────────────
#  SystemConfiguration — read as one snapshot per tick
# ──────────────────────────────────────────────────────────────

class SystemConfiguration(BaseModel):
    """
    Operational knobs for eligibility. Frozen: a tick holds one instance for its
    whole duration, and hot reloads swap in a new instance instead of mutating.
    """
    model_config = ConfigDict(frozen=True)

    min_wait_minutes: int = Field(default=30, ge=0)
    max_wait_minutes: int = Field(default=40, ge=0)
    end_of_day_time: str = "18:00"
    timezone: str = "America/Sao_Paulo"

    flow_paused: bool = False
    end_of_day_paused: bool = False
    ignore_business_hours: bool = False

    excluded_sectors: frozenset[str] = frozenset()
    excluded_channels: frozenset[str] = frozenset()

    business_start_time: str = "08:00"
    business_end_time: str = "18:00"
    saturday_start_time: str = "08:00"
    saturday_end_time: str = "12:00"
    working_days: frozenset[int] = frozenset({1, 2, 3, 4, 5, 6})   # ISO weekdays

    @field_validator(
        "end_of_day_time", "business_start_time", "business_end_time",
        "saturday_start_time", "saturday_end_time",
    )
    @classmethod
    def _check_hhmm(cls, v: str) -> str:
        if not _HHMM.match(v):
            raise ValueError(f"expected HH:MM, got {v!r}")
        return v

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone {v!r}") from e
        return v

    @field_validator("working_days")
    @classmethod
    def _check_weekdays(cls, v: frozenset[int]) -> frozenset[int]:
        bad = [d for d in v if d < 1 or d > 7]
        if bad:
            raise ValueError(f"working_days must be ISO weekdays 1..7, got {sorted(bad)}")
        return v

    @model_validator(mode="after")
    def _check_window(self) -> SystemConfiguration:
        if self.min_wait_minutes > self.max_wait_minutes:
            raise ValueError("min_wait_minutes must not exceed max_wait_minutes")
        return self

    def is_excluded(self, patient: WaitingPatient) -> bool:
        return (
            patient.sector_id in self.excluded_sectors
            or patient.channel_id in self.excluded_channels
        )
