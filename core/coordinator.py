"""
Dispatch Coordinator — runs one scheduler tick end to end.

Each tick walks the same strictly ordered phases:

    Fetch → Sweep → Evaluate → Reserve → Send → Settle

  Fetch     pull the waiting snapshot from the queue source (FetchError aborts,
            nothing has been mutated yet)
  Sweep     release reservations that were never confirmed within the timeout
  Evaluate  eligibility per patient, with already-sent read fresh from the
            lifecycle store
  Reserve   claim each (patient, type, day) tag; end-of-day pairs first.
            Only pairs that get RESERVED go on. A ledger write failure here
            aborts the tick before anything is sent.
  Send      one attempt per reserved pair, bounded parallelism
  Settle    success → confirm → mark_sent → history; failure → release.
            Then refresh lifecycle status for everyone seen or gone.

Reserving before sending is what makes overlapping ticks safe: two ticks that
both see the same unsent patient race on try_reserve, and only one wins.
Recovery from any failure is the next tick, never an in-tick retry.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from backend.connector import FetchError, QueueSource, Sender
from config.settings import ConfigSource
from database.store_base import PersistenceError
from database.store_factory import Stores
from database.tags import make_tag
from models.schemas import (
    MessageType, ReserveResult, SendResult, SentRecord, SystemConfiguration, WaitingPatient,
)
from rules.eligibility import DISPATCH_ORDER, EligibilityEvaluator, ordered
from utils.business_calendar import BusinessCalendar

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TickOutcome(str, Enum):
    OK = "ok"
    FETCH_FAILED = "fetch_failed"
    FAILED = "failed"            # ledger persistence failure


@dataclass
class DispatchPair:
    """One (patient, message type) decision and what became of it."""
    patient: WaitingPatient
    message_type: MessageType
    tag: str
    reserve_result: Optional[ReserveResult] = None
    send_result: Optional[SendResult] = None


@dataclass
class TickReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcome: TickOutcome = TickOutcome.OK
    error: str = ""
    fetched: int = 0
    swept: int = 0
    eligible: int = 0
    reserved: int = 0
    conflicts: int = 0
    sent: int = 0
    failed: int = 0
    unconfirmed: int = 0         # sent, but the confirmation could not be persisted
    processed: list[str] = field(default_factory=list)
    monitoring: dict[str, Any] = field(default_factory=dict)
    pairs: list[DispatchPair] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "outcome": self.outcome.value,
            "error": self.error,
            "fetched": self.fetched,
            "swept": self.swept,
            "eligible": self.eligible,
            "reserved": self.reserved,
            "conflicts": self.conflicts,
            "sent": self.sent,
            "failed": self.failed,
            "unconfirmed": self.unconfirmed,
            "processed": list(self.processed),
            "monitoring": dict(self.monitoring),
        }


def monitoring_stats(patients: list[WaitingPatient], now: datetime, min_wait: int) -> dict[str, Any]:
    """Queue-level numbers for dashboards: size, how many passed min wait, average wait."""
    waits = [p.wait_minutes(now) for p in patients]
    return {
        "total_waiting": len(patients),
        "over_min_wait": sum(1 for w in waits if w >= min_wait),
        "average_wait_minutes": round(sum(waits) / len(waits)) if waits else 0,
        "longest_wait_minutes": max(waits) if waits else 0,
    }


class DispatchCoordinator:
    """
    Orchestrates ticks over explicit collaborators. Holds no patient state of
    its own between ticks apart from the date of the last maintenance run.
    """

    def __init__(
        self,
        queue_source: QueueSource,
        sender: Sender,
        stores: Stores,
        config_source: ConfigSource,
        evaluator: Optional[EligibilityEvaluator] = None,
        max_parallel_sends: int = 5,
        reservation_timeout: timedelta = timedelta(minutes=5),
        retention: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = _utcnow,
    ):
        if retention < timedelta(days=1):
            raise ValueError("retention must be at least one day, tags are bucketed per day")
        self.queue_source = queue_source
        self.sender = sender
        self.stores = stores
        self.config_source = config_source
        self.evaluator = evaluator or EligibilityEvaluator()
        self.max_parallel_sends = max(1, max_parallel_sends)
        self.reservation_timeout = reservation_timeout
        self.retention = retention
        self.clock = clock
        self._last_maintenance_day: Optional[date] = None

    # ══════════════════════════════════════════════════════════
    #  TICK
    # ══════════════════════════════════════════════════════════

    async def run_tick(self, now: Optional[datetime] = None) -> TickReport:
        now = now or self.clock()
        config = self.config_source.snapshot()
        calendar = BusinessCalendar.from_config(config)
        report = TickReport(started_at=now)
        log = logger.bind(tick_at=now.isoformat())

        # 1. Fetch
        try:
            patients = await self.queue_source.list_waiting()
        except Exception as e:
            error = e if isinstance(e, FetchError) else FetchError(str(e))
            log.error("tick_fetch_failed", error=str(error))
            report.outcome = TickOutcome.FETCH_FAILED
            report.error = str(error)
            return self._finish(report)

        patients = self._dedupe(patients)
        report.fetched = len(patients)
        report.monitoring = monitoring_stats(patients, now, config.min_wait_minutes)

        # 2. Sweep
        try:
            report.swept = self.stores.reservations.sweep_abandoned(now, self.reservation_timeout)
        except PersistenceError as e:
            return self._abort(report, log, "sweep", e)

        # 3. Evaluate
        pairs = self._evaluate(patients, now, config, calendar)
        report.eligible = len(pairs)

        # 4. Reserve
        try:
            reserved = self._reserve(pairs, now, report)
        except PersistenceError as e:
            return self._abort(report, log, "reserve", e)

        # 5. Send
        if reserved:
            await self._send_all(reserved)

        # 6. Settle
        self._settle(patients, reserved, now, report)
        self._maybe_run_maintenance(now, calendar)

        if report.eligible or report.swept or report.processed:
            log.info("tick_complete", outcome=report.outcome.value,
                     fetched=report.fetched, swept=report.swept, eligible=report.eligible,
                     reserved=report.reserved, conflicts=report.conflicts, sent=report.sent,
                     failed=report.failed, unconfirmed=report.unconfirmed)
        return self._finish(report)

    # ── Phases ────────────────────────────────────────────────

    @staticmethod
    def _dedupe(patients: list[WaitingPatient]) -> list[WaitingPatient]:
        seen: dict[str, WaitingPatient] = {}
        for p in patients:
            if p.id in seen:
                logger.warning("duplicate_patient_in_snapshot", patient_id=p.id)
                continue
            seen[p.id] = p
        return list(seen.values())

    def already_sent(self, patient: WaitingPatient) -> set[MessageType]:
        """Fresh read per tick. A changed wait_start means a new episode with nothing sent."""
        record = self.stores.lifecycle.get(patient.id)
        if record is None:
            return set()
        if record.wait_start is not None and record.wait_start != patient.wait_start:
            return set()
        return self.stores.lifecycle.get_already_sent(patient.id)

    def _evaluate(
        self,
        patients: list[WaitingPatient],
        now: datetime,
        config: SystemConfiguration,
        calendar: BusinessCalendar,
    ) -> list[DispatchPair]:
        pairs = []
        for patient in patients:
            eligible = self.evaluator.evaluate(
                patient, now, config, self.already_sent(patient), calendar,
            )
            for message_type in ordered(eligible):
                day = self.evaluator.window_day(patient, message_type, config, calendar)
                pairs.append(DispatchPair(
                    patient=patient,
                    message_type=message_type,
                    tag=make_tag(patient.id, message_type, day),
                ))
        # End-of-day reservations go first across the whole tick.
        pairs.sort(key=lambda p: DISPATCH_ORDER.index(p.message_type))
        return pairs

    def _reserve(self, pairs: list[DispatchPair], now: datetime, report: TickReport) -> list[DispatchPair]:
        # No await in this loop: it is one critical section on the event loop,
        # and the store's own lock covers callers on other threads.
        reserved = []
        for pair in pairs:
            pair.reserve_result = self.stores.reservations.try_reserve(
                pair.tag, pair.patient.id, now, pair.message_type,
            )
            report.pairs.append(pair)
            if pair.reserve_result == ReserveResult.RESERVED:
                reserved.append(pair)
            else:
                report.conflicts += 1
                logger.debug("reserve_conflict", tag=pair.tag, patient_id=pair.patient.id,
                             message_type=pair.message_type.value,
                             result=pair.reserve_result.value)
        report.reserved = len(reserved)
        return reserved

    async def _send_all(self, reserved: list[DispatchPair]) -> None:
        semaphore = asyncio.Semaphore(self.max_parallel_sends)

        async def send_one(pair: DispatchPair) -> None:
            async with semaphore:
                try:
                    pair.send_result = await self.sender.send(pair.patient, pair.message_type)
                except Exception as e:
                    logger.error("send_raised", patient_id=pair.patient.id,
                                 message_type=pair.message_type.value, error=str(e))
                    pair.send_result = SendResult.failed(f"{type(e).__name__}: {e}")

        await asyncio.gather(*(send_one(pair) for pair in reserved))

    def _settle(
        self,
        patients: list[WaitingPatient],
        reserved: list[DispatchPair],
        now: datetime,
        report: TickReport,
    ) -> None:
        lifecycle = self.stores.lifecycle

        for patient in patients:
            try:
                lifecycle.upsert_waiting(patient, now)
            except PersistenceError as e:
                logger.error("lifecycle_upsert_failed", patient_id=patient.id, error=str(e))

        for pair in reserved:
            result = pair.send_result or SendResult.failed("no result")
            if result.success:
                self._settle_success(pair, now, report)
            else:
                self._settle_failure(pair, result, report)

        try:
            report.processed = lifecycle.mark_absent([p.id for p in patients], now)
        except PersistenceError as e:
            logger.error("lifecycle_mark_absent_failed", error=str(e))
        for patient_id in report.processed:
            logger.info("patient_left_queue", patient_id=patient_id)

    def _settle_success(self, pair: DispatchPair, now: datetime, report: TickReport) -> None:
        try:
            confirmed = self.stores.reservations.confirm(pair.tag, now)
        except PersistenceError as e:
            # Leave the reservation in place; the sweep decides its fate.
            logger.error("confirm_persist_failed", tag=pair.tag,
                         patient_id=pair.patient.id, error=str(e))
            report.unconfirmed += 1
            report.outcome = TickOutcome.FAILED
            report.error = str(e)
            return
        if not confirmed:
            logger.warning("confirm_missing_reservation", tag=pair.tag, patient_id=pair.patient.id)

        report.sent += 1
        logger.info("message_sent", patient_id=pair.patient.id,
                    message_type=pair.message_type.value, tag=pair.tag,
                    message_id=pair.send_result.message_id if pair.send_result else "")
        try:
            self.stores.lifecycle.mark_sent(pair.patient.id, pair.message_type)
            self.stores.history.record(SentRecord(
                patient_id=pair.patient.id,
                message_type=pair.message_type,
                tag=pair.tag,
                sent_at=now,
                patient_name=pair.patient.name,
                channel_id=pair.patient.channel_id,
            ))
        except PersistenceError as e:
            # The ledger already holds the confirmation, so no resend can follow.
            logger.error("sent_bookkeeping_failed", patient_id=pair.patient.id,
                         message_type=pair.message_type.value, error=str(e))

    def _settle_failure(self, pair: DispatchPair, result: SendResult, report: TickReport) -> None:
        report.failed += 1
        logger.warning("message_send_failed", patient_id=pair.patient.id,
                       message_type=pair.message_type.value, tag=pair.tag,
                       reason=result.reason, status_code=result.status_code)
        try:
            self.stores.reservations.release(pair.tag)
        except PersistenceError as e:
            logger.error("release_persist_failed", tag=pair.tag, error=str(e))
            report.outcome = TickOutcome.FAILED
            report.error = str(e)

    # ── Maintenance ───────────────────────────────────────────

    def _maybe_run_maintenance(self, now: datetime, calendar: BusinessCalendar) -> None:
        today = calendar.day_bucket(now)
        if self._last_maintenance_day == today:
            return
        self._last_maintenance_day = today
        self.run_maintenance(now)

    def run_maintenance(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Drop processed patients, confirmed tags and history older than the retention window."""
        now = now or self.clock()
        cutoff = now - self.retention
        pruned = {"patients": 0, "reservations": 0, "history": 0}
        try:
            pruned["patients"] = self.stores.lifecycle.prune_older_than(self.retention, now)
            pruned["reservations"] = self.stores.reservations.prune_confirmed_older_than(cutoff)
            pruned["history"] = self.stores.history.prune_older_than(cutoff)
        except PersistenceError as e:
            logger.error("maintenance_failed", error=str(e))
            return pruned
        if any(pruned.values()):
            logger.info("maintenance_complete", cutoff=cutoff.isoformat(), **pruned)
        return pruned

    # ── Helpers ───────────────────────────────────────────────

    def _abort(self, report: TickReport, log, phase: str, error: PersistenceError) -> TickReport:
        log.error("tick_aborted", phase=phase, error=str(error), collection=error.collection)
        report.outcome = TickOutcome.FAILED
        report.error = str(error)
        return self._finish(report)

    def _finish(self, report: TickReport) -> TickReport:
        report.finished_at = self.clock()
        return report
