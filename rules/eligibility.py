"""
Eligibility Evaluator — decides which notifications a waiting patient qualifies for.

Pure: no I/O, no clock reads, no store access. Everything it needs is passed in,
so redundant or concurrent calls are always safe and always agree.

Rules (evaluated independently per message type):

  thirty_minute   min_wait <= waited <= max_wait, not excluded,
                  inside business hours (unless ignore_business_hours),
                  end-of-day cutoff not yet passed, not already sent.

  end_of_day      now >= cutoff of the day the wait started, not excluded,
                  end-of-day messages not paused, not already sent.
                  Independent of min/max wait.

A global flow pause suppresses both.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from models.schemas import MessageType, SystemConfiguration, WaitingPatient
from utils.business_calendar import BusinessCalendar

# End-of-day takes dispatch priority once the cutoff has passed.
DISPATCH_ORDER = (MessageType.END_OF_DAY, MessageType.THIRTY_MINUTE)


def ordered(types: Iterable[MessageType]) -> list[MessageType]:
    """Sort message types into dispatch order."""
    present = set(types)
    return [t for t in DISPATCH_ORDER if t in present]


class EligibilityEvaluator:
    """
    Stateless rule set. `calendar` may be supplied to share one instance per
    tick; otherwise one is built from the config snapshot on every call.
    """

    def evaluate(
        self,
        patient: WaitingPatient,
        now: datetime,
        config: SystemConfiguration,
        already_sent: Optional[set[MessageType]] = None,
        calendar: Optional[BusinessCalendar] = None,
    ) -> set[MessageType]:
        reasons = self.explain(patient, now, config, already_sent, calendar)
        return {t for t, reason in reasons.items() if reason is None}

    def explain(
        self,
        patient: WaitingPatient,
        now: datetime,
        config: SystemConfiguration,
        already_sent: Optional[set[MessageType]] = None,
        calendar: Optional[BusinessCalendar] = None,
    ) -> dict[MessageType, Optional[str]]:
        """
        Per message type: None if eligible, otherwise the first rule that failed.
        """
        sent = already_sent or set()
        cal = calendar or BusinessCalendar.from_config(config)

        if config.flow_paused:
            return {t: "flow_paused" for t in DISPATCH_ORDER}

        return {
            MessageType.THIRTY_MINUTE: self._thirty_minute(patient, now, config, sent, cal),
            MessageType.END_OF_DAY: self._end_of_day(patient, now, config, sent, cal),
        }

    # ── Rules ─────────────────────────────────────────────────

    @staticmethod
    def _thirty_minute(
        patient: WaitingPatient,
        now: datetime,
        config: SystemConfiguration,
        sent: set[MessageType],
        cal: BusinessCalendar,
    ) -> Optional[str]:
        if MessageType.THIRTY_MINUTE in sent:
            return "already_sent"
        waited = patient.wait_minutes(now)
        if waited < config.min_wait_minutes:
            return f"below_min_wait ({waited}m < {config.min_wait_minutes}m)"
        if waited > config.max_wait_minutes:
            return f"above_max_wait ({waited}m > {config.max_wait_minutes}m)"
        if config.is_excluded(patient):
            return "excluded"
        if not config.ignore_business_hours and not cal.is_business_hours(now):
            return "outside_business_hours"
        if cal.cutoff_passed(now):
            return "end_of_day_cutoff_passed"
        return None

    @staticmethod
    def _end_of_day(
        patient: WaitingPatient,
        now: datetime,
        config: SystemConfiguration,
        sent: set[MessageType],
        cal: BusinessCalendar,
    ) -> Optional[str]:
        if MessageType.END_OF_DAY in sent:
            return "already_sent"
        if config.end_of_day_paused:
            return "end_of_day_paused"
        if config.is_excluded(patient):
            return "excluded"
        if not cal.cutoff_passed_for_day(cal.day_bucket(patient.wait_start), now):
            return "before_cutoff"
        return None

    # ── Tag day bucket ────────────────────────────────────────

    @staticmethod
    def window_day(
        patient: WaitingPatient,
        message_type: MessageType,
        config: SystemConfiguration,
        calendar: Optional[BusinessCalendar] = None,
    ) -> date:
        """
        Local date on which this message type's eligibility window opened for
        the patient. Depends only on the patient and config, never on `now`, so
        a window that straddles midnight still maps to a single tag.
        """
        cal = calendar or BusinessCalendar.from_config(config)
        if message_type == MessageType.THIRTY_MINUTE:
            opened = patient.wait_start + timedelta(minutes=config.min_wait_minutes)
            return cal.day_bucket(opened)
        return cal.day_bucket(patient.wait_start)
