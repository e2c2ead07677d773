"""Tests for cleanup planning and execution."""

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path

import pytest

from conftest import T0, messages_at
from core.cleanup import GLOBAL_POOL
from core.enums import CleanupReason, SegmentStatus
from core.exceptions import FileDeletionFailed, SegmentNotFound
from core.models import CleanupReport
from core.run_lock import RunLock


def _status(service, handle):
    return service.registry.get_segment(handle).status


class TestQuotaEviction:
    def test_camera_over_quota_evicts_oldest_only(self, service, set_camera, add_segment, clock):
        set_camera("cam1", storage_quota_bytes=1_000_000)
        oldest = add_segment("cam1", T0, 400_000)
        middle = add_segment("cam1", T0 + timedelta(minutes=10), 400_000)
        newest = add_segment("cam1", T0 + timedelta(minutes=20), 400_000)
        clock.set(T0 + timedelta(hours=1))

        report = service.trigger_cleanup_now()

        assert [c.filename for c in report.deleted] == [oldest.filename]
        assert report.deleted[0].reason == CleanupReason.CAMERA_QUOTA
        assert service.quota.used_bytes("cam1") == 800_000
        assert _status(service, oldest) == SegmentStatus.DELETED
        assert _status(service, middle) == SegmentStatus.COMPLETED
        assert _status(service, newest) == SegmentStatus.COMPLETED
        assert not Path(oldest.file_path).exists()
        assert Path(middle.file_path).exists()

    def test_protected_segment_leaves_camera_stuck(self, service, set_camera, add_segment,
                                                   clock, log_records):
        set_camera("cam1", retention_days=1, storage_quota_bytes=1_000_000)
        handle = add_segment("cam1", T0, 1_500_000, protected=True)
        clock.set(T0 + timedelta(days=3))

        report = service.trigger_cleanup_now()

        assert report.deleted_for_camera("cam1") == []
        assert report.stuck_over_quota == ["cam1"]
        assert _status(service, handle) == SegmentStatus.COMPLETED
        assert any("still over quota" in m for m in messages_at(log_records, "WARNING"))

    def test_retention_runs_before_quota(self, service, set_camera, add_segment, clock):
        set_camera("cam1", retention_days=1, storage_quota_bytes=1_000_000)
        expired = add_segment("cam1", T0, 400_000)
        second = add_segment("cam1", T0 + timedelta(hours=2), 400_000)
        third = add_segment("cam1", T0 + timedelta(hours=3), 400_000)
        fourth = add_segment("cam1", T0 + timedelta(hours=4), 400_000)
        clock.set(T0 + timedelta(days=1, hours=1))

        report = service.trigger_cleanup_now()

        assert [(c.filename, c.reason) for c in report.deleted] == [
            (expired.filename, CleanupReason.RETENTION),
            (second.filename, CleanupReason.CAMERA_QUOTA),
        ]
        assert _status(service, third) == SegmentStatus.COMPLETED
        assert _status(service, fourth) == SegmentStatus.COMPLETED
        assert service.quota.used_bytes("cam1") == 800_000

    def test_global_quota_evicts_oldest_across_cameras(self, service, config_manager,
                                                       add_segment, clock):
        config_manager.storage_config.storage_quota_bytes = 1_000_000
        oldest = add_segment("cam1", T0, 400_000)
        other = add_segment("cam2", T0 + timedelta(hours=1), 400_000)
        newest = add_segment("cam1", T0 + timedelta(hours=2), 400_000)
        clock.set(T0 + timedelta(hours=3))

        report = service.trigger_cleanup_now()

        assert [(c.filename, c.reason) for c in report.deleted] == [
            (oldest.filename, CleanupReason.GLOBAL_QUOTA)
        ]
        assert _status(service, other) == SegmentStatus.COMPLETED
        assert _status(service, newest) == SegmentStatus.COMPLETED
        assert service.quota.used_global == 800_000

    def test_global_pool_stuck_when_only_protected(self, service, config_manager, add_segment, clock):
        config_manager.storage_config.storage_quota_bytes = 100
        add_segment("cam1", T0, 500, protected=True)

        report = service.trigger_cleanup_now()

        assert report.deleted == []
        assert report.stuck_over_quota == [GLOBAL_POOL]


class TestRetentionCleanup:
    def test_expired_segments_deleted_oldest_first(self, service, set_camera, add_segment, clock):
        set_camera("cam1", retention_days=1)
        second = add_segment("cam1", T0 + timedelta(hours=1), 100)
        first = add_segment("cam1", T0, 100)
        fresh = add_segment("cam1", T0 + timedelta(days=2), 100)
        clock.set(T0 + timedelta(days=1, hours=2))

        report = service.trigger_cleanup_now()

        assert [c.filename for c in report.deleted] == [first.filename, second.filename]
        assert _status(service, fresh) == SegmentStatus.COMPLETED

    def test_recording_and_protected_never_deleted(self, service, config_manager, add_segment, clock):
        config_manager.storage_config.retention_days = 0
        recording = service.registry.create_segment("cam1", T0)
        protected = add_segment("cam1", T0 + timedelta(minutes=10), 100, protected=True)
        plain = add_segment("cam1", T0 + timedelta(minutes=20), 100)
        clock.set(T0 + timedelta(hours=1))

        report = service.trigger_cleanup_now()

        assert [c.filename for c in report.deleted] == [plain.filename]
        assert _status(service, recording) == SegmentStatus.RECORDING
        assert _status(service, protected) == SegmentStatus.COMPLETED

    def test_second_pass_is_a_no_op(self, service, set_camera, add_segment, clock):
        set_camera("cam1", retention_days=1)
        add_segment("cam1", T0, 100)
        clock.set(T0 + timedelta(days=2))

        assert service.trigger_cleanup_now().deleted_count == 1
        assert service.trigger_cleanup_now().deleted_count == 0


class TestPreview:
    def test_preview_matches_pass(self, service, set_camera, add_segment, clock):
        set_camera("cam1", retention_days=1, storage_quota_bytes=1_000_000)
        set_camera("cam2", retention_days=30)
        add_segment("cam1", T0, 400_000)
        for i in range(1, 5):
            add_segment("cam1", T0 + timedelta(hours=i), 400_000)
        add_segment("cam2", T0, 100)
        clock.set(T0 + timedelta(days=1, hours=1))

        preview = service.preview_cleanup()
        report = service.trigger_cleanup_now()

        planned = [(c.filename, c.reason) for c in preview.candidates]
        executed = [(c.filename, c.reason) for c in report.deleted]
        assert planned == executed
        assert preview.total_bytes_freed == report.freed_bytes

    def test_preview_does_not_mutate(self, service, set_camera, add_segment, clock):
        set_camera("cam1", retention_days=1)
        handle = add_segment("cam1", T0, 100)
        clock.set(T0 + timedelta(days=2))

        preview = service.preview_cleanup()

        assert [c.filename for c in preview.candidates] == [handle.filename]
        assert _status(service, handle) == SegmentStatus.COMPLETED
        assert Path(handle.file_path).exists()
        assert preview.to_dict()["candidates"][0]["reason"] == "retention"


class TestFailureHandling:
    def test_missing_file_self_heals(self, service, set_camera, add_segment, clock):
        set_camera("cam1", retention_days=1)
        handle = add_segment("cam1", T0, 100, write_file=False)
        clock.set(T0 + timedelta(days=2))

        report = service.trigger_cleanup_now()

        assert report.missing_files == [handle.filename]
        assert [c.filename for c in report.deleted] == [handle.filename]
        assert _status(service, handle) == SegmentStatus.DELETED
        assert service.quota.used_bytes("cam1") == 0

    def test_deletion_failure_is_skipped_and_counted(self, service, set_camera, add_segment,
                                                     clock, monkeypatch, log_records):
        set_camera("cam1", retention_days=1)
        stuck = add_segment("cam1", T0, 100)
        other = add_segment("cam1", T0 + timedelta(hours=1), 100)
        clock.set(T0 + timedelta(days=2))

        real_delete = service.storage.delete_file

        def failing_delete(file_path):
            if file_path == stuck.file_path:
                raise FileDeletionFailed(file_path, "Permission denied")
            return real_delete(file_path)

        monkeypatch.setattr(service.storage, "delete_file", failing_delete)

        report = service.trigger_cleanup_now()

        assert [c.filename for c in report.failed] == [stuck.filename]
        assert [c.filename for c in report.deleted] == [other.filename]
        assert _status(service, stuck) == SegmentStatus.COMPLETED
        assert service.quota.used_bytes("cam1") == 100
        assert not messages_at(log_records, "ERROR")

        service.trigger_cleanup_now()
        service.trigger_cleanup_now()
        assert any("failed 3 times" in m for m in messages_at(log_records, "ERROR"))

    def test_permission_error_from_filesystem(self, service, set_camera, add_segment, clock, monkeypatch):
        set_camera("cam1", retention_days=1)
        handle = add_segment("cam1", T0, 100)
        clock.set(T0 + timedelta(days=2))

        def deny(self, *args, **kwargs):
            raise PermissionError(13, "Permission denied")

        monkeypatch.setattr(Path, "unlink", deny)
        report = service.trigger_cleanup_now()
        monkeypatch.undo()

        assert [c.filename for c in report.failed] == [handle.filename]
        assert _status(service, handle) == SegmentStatus.COMPLETED

    def test_pass_skipped_while_lock_held(self, service, config_manager, set_camera,
                                          add_segment, clock):
        set_camera("cam1", retention_days=1)
        handle = add_segment("cam1", T0, 100)
        clock.set(T0 + timedelta(days=2))

        other = RunLock(config_manager.db_manager, holder="other-host:1", clock=clock)
        assert other.acquire()

        report = service.trigger_cleanup_now()

        assert report.skipped
        assert report.deleted == []
        assert _status(service, handle) == SegmentStatus.COMPLETED

        other.release()
        assert service.trigger_cleanup_now().deleted_count == 1

    def test_segment_protected_after_planning_is_kept(self, service, set_camera, add_segment, clock):
        set_camera("cam1", retention_days=1)
        handle = add_segment("cam1", T0, 100)
        clock.set(T0 + timedelta(days=2))

        candidates = service.cleaner.planner.plan_retention(clock.now)
        service.registry.set_protected(handle, True)

        report = CleanupReport(started_at=clock.now)
        assert service.cleaner.run_lock.acquire()
        try:
            service.cleaner._execute(candidates, report, set())
        finally:
            service.cleaner.run_lock.release()

        assert report.deleted == []
        assert Path(handle.file_path).exists()

    def test_segment_protected_while_file_is_deleted(self, service, set_camera, add_segment,
                                                     clock, monkeypatch, log_records):
        set_camera("cam1", retention_days=1)
        handle = add_segment("cam1", T0, 100)
        clock.set(T0 + timedelta(days=2))

        real_delete = service.storage.delete_file

        def protect_then_delete(file_path):
            service.registry.set_protected(handle, True)
            return real_delete(file_path)

        monkeypatch.setattr(service.storage, "delete_file", protect_then_delete)

        report = service.cleaner.run_pass()

        segment = service.registry.get_segment(handle)
        assert segment.status == SegmentStatus.COMPLETED
        assert segment.protected
        assert report.deleted == []
        assert service.quota.used_bytes("cam1") == 100
        assert any("protected during deletion" in m for m in messages_at(log_records, "ERROR"))

    def test_pass_aborts_when_lock_is_lost(self, service, set_camera, add_segment,
                                           clock, monkeypatch, log_records):
        set_camera("cam1", retention_days=1)
        first = add_segment("cam1", T0, 100)
        second = add_segment("cam1", T0 + timedelta(hours=1), 100)
        clock.set(T0 + timedelta(days=2))

        monkeypatch.setattr(service.cleaner.run_lock, "renew", lambda: False)

        report = service.trigger_cleanup_now()

        assert report.aborted
        assert report.deleted == []
        assert _status(service, first) == SegmentStatus.COMPLETED
        assert _status(service, second) == SegmentStatus.COMPLETED
        assert Path(first.file_path).exists()
        assert any("pass aborted" in m for m in messages_at(log_records, "ERROR"))

    def test_long_pass_keeps_lock_renewed(self, service, config_manager, set_camera,
                                          add_segment, clock, monkeypatch):
        set_camera("cam1", retention_days=1)
        handles = [add_segment("cam1", T0 + timedelta(hours=i), 100) for i in range(3)]
        clock.set(T0 + timedelta(days=2))

        # each deletion takes longer than half the lock TTL
        ttl = service.cleaner.run_lock.ttl
        real_delete = service.storage.delete_file

        def slow_delete(file_path):
            clock.set(clock.now + ttl * 0.6)
            return real_delete(file_path)

        monkeypatch.setattr(service.storage, "delete_file", slow_delete)
        intruder = RunLock(config_manager.db_manager, holder="other-host:1", clock=clock)
        attempts = []
        real_remove = service.registry.remove_segment

        def remove_and_try_lock(handle, **kwargs):
            attempts.append(intruder.acquire())
            return real_remove(handle, **kwargs)

        monkeypatch.setattr(service.registry, "remove_segment", remove_and_try_lock)

        report = service.trigger_cleanup_now()

        assert not report.aborted
        assert report.deleted_count == 3
        assert attempts == [False, False, False]
        assert all(_status(service, h) == SegmentStatus.DELETED for h in handles)


class TestHousekeeping:
    def test_repair_missing_files(self, service, add_segment):
        present = add_segment("cam1", T0, 100)
        missing = add_segment("cam1", T0 + timedelta(hours=1), 200, write_file=False)

        assert service.repair_missing_files() == 1
        assert _status(service, missing) == SegmentStatus.DELETED
        assert _status(service, present) == SegmentStatus.COMPLETED
        assert service.quota.used_bytes("cam1") == 100

    def test_orphaned_files_removed_when_old(self, service, config_manager, add_segment, clock):
        known = add_segment("cam1", T0, 100)
        day_dir = Path(config_manager.storage_config.recording_path) / "cam9" / "20231231"
        day_dir.mkdir(parents=True)
        old_orphan = day_dir / "cam9_20231231_000000.mp4"
        new_orphan = day_dir / "cam9_20231231_230000.mp4"
        old_orphan.write_bytes(b"\x00")
        new_orphan.write_bytes(b"\x00")

        old_ts = (clock.now - timedelta(days=2)).timestamp()
        new_ts = clock.now.timestamp()
        os.utime(old_orphan, (old_ts, old_ts))
        os.utime(new_orphan, (new_ts, new_ts))
        os.utime(known.file_path, (old_ts, old_ts))

        assert service.cleanup_orphaned_files() == 1
        assert not old_orphan.exists()
        assert new_orphan.exists()
        assert Path(known.file_path).exists()

    def test_empty_directories_pruned(self, service, set_camera, add_segment, clock):
        set_camera("cam1", retention_days=1)
        handle = add_segment("cam1", T0, 100)
        clock.set(T0 + timedelta(days=2))

        service.trigger_cleanup_now()

        assert not Path(handle.file_path).parent.exists()

    def test_purge_deleted_metadata(self, service, config_manager, set_camera, add_segment, clock):
        set_camera("cam1", retention_days=1)
        handle = add_segment("cam1", T0, 100)
        clock.set(T0 + timedelta(days=2))
        service.trigger_cleanup_now()

        assert service.purge_deleted_metadata() == 0
        clock.advance(days=config_manager.storage_config.deleted_metadata_days + 1)
        assert service.purge_deleted_metadata() == 1
        with pytest.raises(SegmentNotFound):
            service.registry.get_segment(handle)
