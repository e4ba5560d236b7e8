"""
Message tags — the unit of deduplication.

A tag names one (patient, message type, calendar day) dispatch slot. It is a
pure function of those three values, so every process and every tick computes
the same tag for the same slot.
"""
from __future__ import annotations

import hashlib
from datetime import date

from models.schemas import MessageType


def make_tag(patient_id: str, message_type: MessageType, day: date) -> str:
    mt = message_type.value if isinstance(message_type, MessageType) else str(message_type)
    raw = f"{patient_id}|{mt}|{day.isoformat()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
