"""Tests for the retention service facade and the command line entry point."""

from __future__ import annotations

import json
from datetime import timedelta

import pytest
from loguru import logger

import main
from conftest import T0
from core.config import ConfigManager
from core.enums import AlertLevel, SegmentStatus
from core.exceptions import AlreadyDeleted, SegmentNotFound
from core.run_lock import RunLock
from core.services import RetentionService


class TestStats:
    def test_storage_stats_and_alert_levels(self, service, config_manager, set_camera, add_segment):
        set_camera("cam1", storage_quota_bytes=1_000)
        set_camera("cam3")
        config_manager.storage_config.storage_quota_bytes = 2_000
        add_segment("cam1", T0, 950)
        add_segment("cam2", T0, 1_100)

        stats = service.get_storage_stats()

        assert stats.used_bytes_by_camera == {"cam1": 950, "cam2": 1_100, "cam3": 0}
        assert stats.used_global_bytes == 2_050
        assert stats.quota_by_camera["cam1"] == 1_000
        assert stats.quota_by_camera["cam2"] is None
        assert stats.camera_alert_level("cam1") == AlertLevel.WARNING
        assert stats.camera_alert_level("cam2") == AlertLevel.NORMAL
        assert stats.global_alert_level == AlertLevel.CRITICAL
        assert stats.to_dict()["usedGlobalBytes"] == 2_050

    def test_retention_stats(self, service, add_segment, clock):
        add_segment("cam1", T0, 100)
        add_segment("cam1", T0 + timedelta(days=5), 200)
        add_segment("cam1", T0 + timedelta(days=10), 300, protected=True)
        service.registry.create_segment("cam1", T0 + timedelta(days=11))
        clock.set(T0 + timedelta(days=30, hours=1))

        stats = service.get_retention_stats()

        assert stats.overdue == 1
        assert stats.expiring_within_24h == 0
        assert stats.expiring_within_7d == 1
        assert stats.protected == 1
        assert stats.by_status[SegmentStatus.COMPLETED.value]["count"] == 3
        assert stats.by_status[SegmentStatus.RECORDING.value]["count"] == 1
        assert stats.total_size == 600

    def test_status_summary(self, service, add_segment):
        add_segment("cam1", T0, 100)
        service.trigger_cleanup_now()

        status = service.get_status()

        assert status["started"] is True
        assert status["scheduler_running"] is False
        assert status["last_report"]["skipped"] is False
        assert status["storage"]["usedGlobalBytes"] == 100


class TestOperations:
    def test_protect_deleted_segment_fails(self, service, add_segment):
        handle = add_segment("cam1", T0, 100)
        service.registry.remove_segment(handle)

        with pytest.raises(AlreadyDeleted):
            service.set_protected(handle.filename, True)

    def test_protect_unknown_segment(self, service):
        with pytest.raises(SegmentNotFound):
            service.set_protected("missing.mp4", True)

    def test_callbacks_fire_after_pass(self, service, set_camera, add_segment, clock):
        set_camera("cam1", retention_days=1, storage_quota_bytes=100)
        add_segment("cam1", T0, 500, protected=True)
        add_segment("cam1", T0 + timedelta(hours=1), 50)
        clock.set(T0 + timedelta(days=2))

        completed, stuck = [], []
        service.register_callback("cleanup_completed", completed.append)
        service.register_callback("stuck_over_quota", stuck.append)

        service.trigger_cleanup_now()

        assert len(completed) == 1
        assert completed[0].deleted_count == 1
        assert stuck == [["cam1"]]

    def test_failing_callback_is_logged(self, service, log_records):
        def broken(_report):
            raise ValueError("listener exploded")

        service.register_callback("cleanup_completed", broken)
        service.trigger_cleanup_now()

        assert any("listener exploded" in r["message"] for r in log_records if r["level"].name == "ERROR")

    def test_start_with_scheduler_clears_stale_lock(self, config_manager, clock):
        stale = RunLock(config_manager.db_manager, holder="crashed:99", clock=clock)
        assert stale.acquire()
        config_manager.storage_config.auto_cleanup_enabled = False
        config_manager.storage_config.cleanup_on_startup = False

        svc = RetentionService(config_manager, clock=clock)
        svc.start()
        try:
            assert not stale.is_held()
            assert svc.is_started
        finally:
            svc.stop()


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    ConfigManager.reset_instance()
    yield tmp_path
    ConfigManager.reset_instance()
    logger.remove()


class TestCommandLine:
    def test_import_config_then_stats(self, cli_env, capsys):
        db = str(cli_env / "cli.db")
        yaml_path = cli_env / "retention.yaml"
        yaml_path.write_text(
            "storage:\n"
            f"  recording_path: {cli_env / 'recordings'}\n"
            "  retention_days: 14\n"
            "cameras:\n"
            "  - camera_id: cam1\n"
            "    storage_quota_bytes: 5000\n",
            encoding="utf-8",
        )

        assert main.main(["--db", db, "import-config", str(yaml_path)]) == 0
        capsys.readouterr()

        ConfigManager.reset_instance()
        assert main.main(["--db", db, "stats"]) == 0

        output = json.loads(capsys.readouterr().out)
        assert output["storage"]["quotaByCamera"] == {"cam1": 5000}
        assert output["storage"]["usedGlobalBytes"] == 0

    def test_cleanup_on_empty_registry(self, cli_env, capsys):
        assert main.main(["--db", str(cli_env / "cli.db"), "cleanup"]) == 0
        output = json.loads(capsys.readouterr().out)
        assert output["skipped"] is False

    def test_protect_unknown_segment_returns_error(self, cli_env):
        assert main.main(["--db", str(cli_env / "cli.db"), "protect", "missing.mp4"]) == 1

    def test_import_missing_file_fails(self, cli_env):
        assert main.main(["--db", str(cli_env / "cli.db"), "import-config", "nope.yaml"]) == 1

    def test_error_log_enabled_when_section_missing(self, cli_env, monkeypatch):
        log_dir = cli_env / "logs"
        monkeypatch.setattr(ConfigManager, "get_logging_config",
                            lambda self: {"log_path": str(log_dir)})

        main.setup_logging(db_path=str(cli_env / "cli.db"))
        logger.error("disk unreachable")
        logger.remove()

        error_logs = list(log_dir.glob("retention_errors_*.log"))
        assert len(error_logs) == 1
        assert "disk unreachable" in error_logs[0].read_text(encoding="utf-8")
