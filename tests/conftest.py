"""Shared test fixtures for the waiting-room notifier."""
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from backend.connector import LoggingSender, StaticQueueSource
from config.settings import ConfigSource
from core.coordinator import DispatchCoordinator
from database.store_factory import create_stores
from models.schemas import SystemConfiguration, WaitingPatient

SAO_PAULO = ZoneInfo("America/Sao_Paulo")

# 2025-03-10 is a Monday; São Paulo has no DST, so local = UTC-3 all year.
MONDAY = (2025, 3, 10)
SATURDAY = (2025, 3, 15)
SUNDAY = (2025, 3, 16)


def local_time(hour: int, minute: int = 0, day: tuple = MONDAY) -> datetime:
    return datetime(*day, hour, minute, tzinfo=SAO_PAULO)


@pytest.fixture
def at():
    """at(9, 31) → Monday 09:31 clinic time. at(10, 0, SATURDAY) for other days."""
    return local_time


@pytest.fixture
def make_patient():
    def _make(pid: str = "chat-001", wait_start: datetime = None, **kwargs) -> WaitingPatient:
        return WaitingPatient(
            id=pid,
            name=kwargs.pop("name", f"Patient {pid}"),
            phone=kwargs.pop("phone", "+5511999990000"),
            sector_id=kwargs.pop("sector_id", "triage"),
            channel_id=kwargs.pop("channel_id", "whatsapp-1"),
            wait_start=wait_start or local_time(9, 0),
            **kwargs,
        )
    return _make


@pytest.fixture
def config() -> SystemConfiguration:
    return SystemConfiguration(min_wait_minutes=30, max_wait_minutes=60, end_of_day_time="18:00")


@pytest.fixture
def config_source(config) -> ConfigSource:
    return ConfigSource(initial=config)


@pytest.fixture
def stores():
    return create_stores({"store_backend": "memory"})


@pytest.fixture
def queue() -> StaticQueueSource:
    return StaticQueueSource()


@pytest.fixture
def sender() -> LoggingSender:
    return LoggingSender()


@pytest.fixture
def coordinator(queue, sender, stores, config_source) -> DispatchCoordinator:
    return DispatchCoordinator(
        queue_source=queue,
        sender=sender,
        stores=stores,
        config_source=config_source,
        reservation_timeout=timedelta(minutes=5),
    )
