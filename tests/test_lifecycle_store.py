"""Tests for patient lifecycle tracking and the send history log."""
from datetime import datetime, timedelta, timezone

import pytest

from database.store_memory import InMemoryLifecycleStore, InMemorySendHistory
from models.schemas import MessageType, PatientStatus, SentRecord

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return InMemoryLifecycleStore()


class TestLifecycle:
    def test_upsert_creates_waiting_record(self, store, make_patient):
        record = store.upsert_waiting(make_patient("S"), NOW)
        assert record.status == PatientStatus.WAITING
        assert record.first_seen == NOW
        assert store.get_already_sent("S") == set()

    def test_scenario_e_absent_patient_becomes_processed(self, store, make_patient):
        store.upsert_waiting(make_patient("S"), NOW)
        store.upsert_waiting(make_patient("T"), NOW)

        gone = store.mark_absent(["T"], NOW + timedelta(minutes=1))

        assert gone == ["S"]
        assert store.get("S").status == PatientStatus.PROCESSED
        assert store.get("S").processed_at == NOW + timedelta(minutes=1)
        assert store.get("T").status == PatientStatus.WAITING

    def test_mark_sent_accumulates(self, store, make_patient):
        store.upsert_waiting(make_patient("S"), NOW)
        store.mark_sent("S", MessageType.THIRTY_MINUTE)
        store.mark_sent("S", MessageType.END_OF_DAY)
        assert store.get_already_sent("S") == {MessageType.THIRTY_MINUTE, MessageType.END_OF_DAY}

    def test_mark_sent_unknown_patient(self, store):
        assert store.mark_sent("ghost", MessageType.END_OF_DAY) is False

    def test_upsert_keeps_sent_types_for_same_episode(self, store, make_patient, at):
        p = make_patient("S", wait_start=at(9, 0))
        store.upsert_waiting(p, NOW)
        store.mark_sent("S", MessageType.THIRTY_MINUTE)
        store.upsert_waiting(p, NOW + timedelta(minutes=1))
        assert store.get_already_sent("S") == {MessageType.THIRTY_MINUTE}

    def test_new_wait_start_starts_new_episode(self, store, make_patient, at):
        store.upsert_waiting(make_patient("S", wait_start=at(9, 0)), NOW)
        store.mark_sent("S", MessageType.THIRTY_MINUTE)
        store.upsert_waiting(make_patient("S", wait_start=at(14, 0)), NOW + timedelta(hours=5))
        assert store.get_already_sent("S") == set()

    def test_processed_patient_returning_is_waiting_again(self, store, make_patient):
        p = make_patient("S")
        store.upsert_waiting(p, NOW)
        store.mark_processed("S", NOW)
        store.upsert_waiting(p, NOW + timedelta(minutes=2))
        record = store.get("S")
        assert record.status == PatientStatus.WAITING
        assert record.processed_at is None

    def test_list_by_status_and_stats(self, store, make_patient):
        store.upsert_waiting(make_patient("a"), NOW)
        store.upsert_waiting(make_patient("b"), NOW)
        store.mark_processed("a", NOW)
        assert [r.id for r in store.list_by_status(PatientStatus.WAITING)] == ["b"]
        stats = store.stats()
        assert stats["waiting"] == 1
        assert stats["processed"] == 1
        assert stats["patients"] == 2

    def test_prune_removes_only_old_processed(self, store, make_patient):
        store.upsert_waiting(make_patient("old"), NOW - timedelta(days=10))
        store.mark_processed("old", NOW - timedelta(days=9))
        store.upsert_waiting(make_patient("recent"), NOW - timedelta(days=1))
        store.mark_processed("recent", NOW - timedelta(days=1))
        store.upsert_waiting(make_patient("waiting"), NOW - timedelta(days=30))

        assert store.prune_older_than(timedelta(days=7), NOW) == 1
        assert store.get("old") is None
        assert store.get("recent") is not None
        assert store.get("waiting") is not None
        assert store.list_by_status(PatientStatus.REMOVED) == []
        assert store.stats()["removed"] == 0


class TestSendHistory:
    def _entry(self, pid, mt, sent_at):
        return SentRecord(patient_id=pid, message_type=mt, tag=f"{pid}-{mt.value}", sent_at=sent_at)

    def test_record_and_recent(self):
        history = InMemorySendHistory()
        history.record(self._entry("a", MessageType.THIRTY_MINUTE, NOW))
        history.record(self._entry("b", MessageType.END_OF_DAY, NOW))
        assert [e.patient_id for e in history.recent()] == ["a", "b"]
        assert [e.patient_id for e in history.recent(patient_id="b")] == ["b"]
        assert len(history.recent(limit=1)) == 1

    def test_bounded(self):
        history = InMemorySendHistory(max_entries=3)
        for i in range(5):
            history.record(self._entry(f"p{i}", MessageType.THIRTY_MINUTE, NOW))
        assert [e.patient_id for e in history.recent()] == ["p2", "p3", "p4"]

    def test_counts_and_prune(self):
        history = InMemorySendHistory()
        history.record(self._entry("a", MessageType.THIRTY_MINUTE, NOW - timedelta(days=8)))
        history.record(self._entry("b", MessageType.END_OF_DAY, NOW))
        history.record(self._entry("c", MessageType.END_OF_DAY, NOW))

        assert history.counts_by_type() == {"thirty_minute": 1, "end_of_day": 2, "total": 3}
        assert history.counts_by_type(since=NOW - timedelta(days=1))["total"] == 2
        assert history.prune_older_than(NOW - timedelta(days=7)) == 1
        assert history.counts_by_type()["total"] == 2
