"""Shared fixtures for retention engine tests."""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Optional

import pytest
from loguru import logger

from core.config import CameraConfigData, ConfigManager
from core.models import SegmentHandle
from core.services import RetentionService

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock; tests move time with advance()."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config_manager(tmp_path):
    ConfigManager.reset_instance()
    manager = ConfigManager.get_instance(db_path=str(tmp_path / "test.db"))
    manager.storage_config.recording_path = str(tmp_path / "recordings")
    manager.storage_config.retention_days = 30
    manager.storage_config.storage_quota_bytes = None
    manager.cameras = []
    yield manager
    ConfigManager.reset_instance()


@pytest.fixture
def set_camera(config_manager) -> Callable[..., CameraConfigData]:
    """Add or replace a camera's retention/quota settings."""

    def _set(camera_id: str, retention_days: Optional[int] = None,
             storage_quota_bytes: Optional[int] = None) -> CameraConfigData:
        config_manager.cameras = [c for c in config_manager.cameras if c.camera_id != camera_id]
        camera = CameraConfigData(
            camera_id=camera_id,
            name=camera_id,
            retention_days=retention_days,
            storage_quota_bytes=storage_quota_bytes,
        )
        config_manager.cameras.append(camera)
        return camera

    return _set


@pytest.fixture
def service(config_manager, clock):
    svc = RetentionService(config_manager, clock=clock)
    svc.start(start_scheduler=False)
    yield svc
    svc.stop()


@pytest.fixture
def add_segment(service) -> Callable[..., SegmentHandle]:
    """Register a finalized segment; the file on disk is a 1-byte placeholder."""

    def _add(camera_id: str, start: datetime, size: int, minutes: int = 10,
             write_file: bool = True, protected: bool = False) -> SegmentHandle:
        handle = service.registry.create_segment(camera_id, start)
        if write_file:
            path = Path(handle.file_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"\x00")
        service.registry.finalize_segment(handle, start + timedelta(minutes=minutes), size)
        if protected:
            service.registry.set_protected(handle, True)
        return handle

    return _add


@pytest.fixture
def log_records() -> List[dict]:
    """Collect loguru records emitted during the test."""
    records: List[dict] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)


@pytest.fixture
def local_tz(monkeypatch):
    """Switch the process-local timezone (TZ + tzset) for the test."""
    if not hasattr(time, "tzset"):
        pytest.skip("time.tzset is not available on this platform")

    def _set(name: str) -> None:
        monkeypatch.setenv("TZ", name)
        time.tzset()

    yield _set
    monkeypatch.undo()
    time.tzset()


def messages_at(records: List[dict], level: str) -> List[str]:
    return [r["message"] for r in records if r["level"].name == level]
