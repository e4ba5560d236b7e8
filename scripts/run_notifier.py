#!/usr/bin/env python3
"""
Waiting-room notifier — operator entry point.

Usage:
    # Run the scheduler until Ctrl+C:
    python scripts/run_notifier.py run

    # One tick now, print the report:
    python scripts/run_notifier.py tick

    # Why is (or isn't) each waiting patient due a message right now?
    python scripts/run_notifier.py check

    # Store counters, recent sends, next end-of-day cutoff:
    python scripts/run_notifier.py status

    # Housekeeping:
    python scripts/run_notifier.py prune
    python scripts/run_notifier.py backup

All commands accept --config PATH (default: $NOTIFIER_CONFIG or config/settings.yaml).
"""
import argparse
import asyncio
import json
import os
import signal
import sys
from datetime import datetime, timedelta, timezone

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog
from dotenv import load_dotenv

from backend.connector import create_queue_source, create_sender
from config.settings import ConfigSource, configure_logging, load_settings, resolve_config_path
from core.coordinator import DispatchCoordinator, TickOutcome
from core.scheduler import Scheduler
from database.store_base import PersistenceError
from database.store_factory import create_stores
from database.store_file import backup_data_dir
from rules.eligibility import EligibilityEvaluator, ordered
from utils.business_calendar import BusinessCalendar

logger = structlog.get_logger()


def build_app(config_path: str):
    """Wire settings, stores and collaborators into a coordinator."""
    settings = load_settings(config_path)
    configure_logging(settings.debug)
    stores = create_stores(settings.database)
    coordinator = DispatchCoordinator(
        queue_source=create_queue_source(settings.queue_source),
        sender=create_sender(settings.sender),
        stores=stores,
        config_source=ConfigSource.from_settings(settings, path=config_path),
        max_parallel_sends=settings.scheduler.max_parallel_sends,
        reservation_timeout=timedelta(seconds=settings.scheduler.reservation_timeout_seconds),
        retention=timedelta(days=settings.database.retention_days),
    )
    return settings, coordinator


async def _close(coordinator: DispatchCoordinator) -> None:
    await coordinator.queue_source.close()
    await coordinator.sender.close()


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


# ── Commands ──────────────────────────────────────────────────

async def cmd_run(config_path: str) -> int:
    settings, coordinator = build_app(config_path)
    scheduler = Scheduler(coordinator, interval_s=settings.scheduler.interval_seconds)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # Windows
            pass

    await scheduler.start()
    try:
        await stop.wait()
    finally:
        await scheduler.stop()
        await _close(coordinator)
    _print(scheduler.status())
    return 0


async def cmd_tick(config_path: str) -> int:
    _, coordinator = build_app(config_path)
    try:
        report = await coordinator.run_tick()
    finally:
        await _close(coordinator)
    _print(report.to_dict())
    return 0 if report.outcome == TickOutcome.OK else 1


async def cmd_check(config_path: str) -> int:
    _, coordinator = build_app(config_path)
    try:
        patients = await coordinator.queue_source.list_waiting()
    except Exception as e:
        print(f"Queue fetch failed: {e}", file=sys.stderr)
        return 1
    finally:
        await _close(coordinator)

    now = datetime.now(timezone.utc)
    config = coordinator.config_source.snapshot()
    evaluator = EligibilityEvaluator()
    rows = []
    for patient in patients:
        reasons = evaluator.explain(patient, now, config, coordinator.already_sent(patient))
        rows.append({
            "patient_id": patient.id,
            "name": patient.name,
            "wait_minutes": patient.wait_minutes(now),
            "eligible": [t.value for t in ordered(t for t, r in reasons.items() if r is None)],
            "reasons": {t.value: r for t, r in reasons.items() if r is not None},
        })
    _print({"checked_at": now.isoformat(), "patients": rows})
    return 0


def cmd_status(config_path: str) -> int:
    settings = load_settings(config_path)
    configure_logging(settings.debug)
    stores = create_stores(settings.database)
    now = datetime.now(timezone.utc)
    since = now - timedelta(days=1)
    calendar = BusinessCalendar.from_config(settings.notifier)
    _print({
        "store_backend": settings.database.store_backend,
        "next_end_of_day": calendar.next_cutoff(now).isoformat(),
        "reservations": stores.reservations.stats(),
        "patients": stores.lifecycle.stats(),
        "sent_last_24h": stores.history.counts_by_type(since),
        "recent_sends": [e.model_dump(mode="json") for e in stores.history.recent(limit=10)],
    })
    return 0


def cmd_prune(config_path: str) -> int:
    _, coordinator = build_app(config_path)
    _print(coordinator.run_maintenance())
    return 0


def cmd_backup(config_path: str) -> int:
    settings = load_settings(config_path)
    configure_logging(settings.debug)
    if settings.database.store_backend != "file":
        print("Backup only applies to the file store backend.", file=sys.stderr)
        return 1
    dest = backup_data_dir(settings.database.store_file_dir)
    print(f"Backup written to {dest}" if dest else "Nothing to back up.")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Waiting-room notifier")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--env-file", default=".env", help="dotenv file loaded before settings")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Run the scheduler until interrupted")
    sub.add_parser("tick", help="Run a single tick and print the report")
    sub.add_parser("check", help="Explain eligibility for the current queue, no sends")
    sub.add_parser("status", help="Show store counters and recent sends")
    sub.add_parser("prune", help="Drop records older than the retention window")
    sub.add_parser("backup", help="Copy the file store into a timestamped directory")
    args = parser.parse_args(argv)

    configure_logging()
    load_dotenv(args.env_file)
    config_path = resolve_config_path(args.config)

    try:
        return _dispatch(args.command, config_path)
    except PersistenceError as e:
        logger.error("store_unavailable", collection=e.collection, error=str(e))
        print(f"Store unavailable: {e}", file=sys.stderr)
        return 2


def _dispatch(command: str, config_path: str) -> int:
    if command == "run":
        return asyncio.run(cmd_run(config_path))
    if command == "tick":
        return asyncio.run(cmd_tick(config_path))
    if command == "check":
        return asyncio.run(cmd_check(config_path))
    if command == "status":
        return cmd_status(config_path)
    if command == "prune":
        return cmd_prune(config_path)
    return cmd_backup(config_path)


if __name__ == "__main__":
    sys.exit(main())
