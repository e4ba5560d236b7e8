"""Tests for the operator CLI wiring."""
import json

import pytest

from scripts.run_notifier import main

SETTINGS = """
database:
  store_backend: "{backend}"
  store_file_dir: "{data_dir}"
notifier:
  min_wait_minutes: 30
  max_wait_minutes: 40
"""


@pytest.fixture
def settings_path(tmp_path):
    def _write(backend="file"):
        path = tmp_path / "settings.yaml"
        path.write_text(SETTINGS.format(backend=backend, data_dir=tmp_path / "data"))
        return str(path)
    return _write


class TestCommands:
    def test_status_prints_store_counters(self, settings_path, capsys):
        assert main(["--config", settings_path(), "--env-file", "/nonexistent", "status"]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out["store_backend"] == "file"
        assert out["reservations"]["reservations"] == 0
        assert out["sent_last_24h"]["total"] == 0

    def test_tick_with_empty_static_queue(self, settings_path, capsys):
        assert main(["--config", settings_path(), "--env-file", "/nonexistent", "tick"]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out["outcome"] == "ok"
        assert out["fetched"] == 0

    def test_prune(self, settings_path, capsys):
        assert main(["--config", settings_path(), "--env-file", "/nonexistent", "prune"]) == 0
        assert json.loads(capsys.readouterr().out) == {"patients": 0, "reservations": 0, "history": 0}

    def test_backup_requires_file_backend(self, settings_path):
        assert main(["--config", settings_path("memory"), "--env-file", "/nonexistent", "backup"]) == 1

    def test_backup_with_no_data(self, settings_path, capsys):
        assert main(["--config", settings_path(), "--env-file", "/nonexistent", "backup"]) == 0
        assert "Nothing to back up" in capsys.readouterr().out

    def test_status_reports_next_end_of_day(self, settings_path, capsys):
        assert main(["--config", settings_path("memory"), "--env-file", "/nonexistent", "status"]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out["next_end_of_day"].startswith("20")
        assert "T18:00:00" in out["next_end_of_day"]

    def test_corrupt_ledger_refuses_to_start(self, settings_path, tmp_path, capsys):
        path = settings_path()
        (tmp_path / "data").mkdir()
        (tmp_path / "data" / "reservations.json").write_text("")
        assert main(["--config", path, "--env-file", "/nonexistent", "tick"]) == 2
        assert "Store unavailable" in capsys.readouterr().err
