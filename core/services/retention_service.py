"""
보존/용량 관리 서비스

레지스트리, 보존 정책, 용량 장부, 정리 패스, 스케줄러를 조립하고
관리 계층(CLI/API)이 사용하는 조회/조작 인터페이스를 제공한다.
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from ..cleanup import SegmentCleaner
from ..exceptions import QuotaLedgerDrift, StorageError
from ..models import CleanupPreview, CleanupReport, RecomputeResult, RetentionStats, Segment, StorageStats
from ..quota import QuotaAccountant
from ..retention import RetentionPolicyResolver
from ..run_lock import RunLock
from ..scheduler import CleanupScheduler
from ..segment_registry import SegmentRegistry
from ..storage import StorageService


class RetentionService:
    """세그먼트 보존/용량 관리 서비스"""

    def __init__(self, config_manager, clock: Callable[[], datetime] = None):
        """
        Initialize retention service

        Args:
            config_manager: 설정 관리자 인스턴스 (DBManager 공유)
            clock: 현재 시각 (테스트에서 주입)
        """
        self.config_manager = config_manager
        self.clock = clock or (lambda: datetime.now().astimezone())
        storage_config = config_manager.storage_config

        self.resolver = RetentionPolicyResolver(config_manager)
        self.registry = SegmentRegistry(
            config_manager.db_manager,
            storage_config.recording_path,
            resolver=self.resolver,
            clock=self.clock,
        )
        self.quota = QuotaAccountant(self.registry, config_manager)
        self.run_lock = RunLock(
            config_manager.db_manager,
            ttl_seconds=storage_config.run_lock_ttl_seconds,
            clock=self.clock,
        )
        self.storage = StorageService(storage_config.recording_path, clock=self.clock)
        self.cleaner = SegmentCleaner(
            self.registry, self.quota, self.storage, self.run_lock, storage_config, clock=self.clock
        )
        self.scheduler = CleanupScheduler(
            self.cleaner, config_manager.cleanup_interval_seconds, clock=self.clock
        )

        self._callbacks: Dict[str, List[Callable]] = {
            'cleanup_completed': [],
            'stuck_over_quota': [],
        }
        self._started = False

    def register_callback(self, event_type: str, callback: Callable):
        """이벤트 콜백 등록"""
        if event_type in self._callbacks:
            self._callbacks[event_type].append(callback)
            logger.debug(f"Callback registered for event: {event_type}")

    def _trigger_callbacks(self, event_type: str, *args, **kwargs):
        """이벤트 콜백 트리거"""
        for callback in self._callbacks.get(event_type, []):
            try:
                callback(*args, **kwargs)
            except Exception as e:
                logger.error(f"Error in callback for {event_type}: {e}")

    # ========== 수명 주기 ==========

    def start(self, start_scheduler: bool = True):
        """
        서비스 시작: 용량 장부 전체 재계산 → 잔여 run-lock 정리 → 스케줄러/초기 정리

        Args:
            start_scheduler: False 이면 백그라운드 스케줄러 없이 시작 (CLI 단발 명령용).
                실행 중인 데몬의 락을 건드리지 않도록 run-lock 정리도 생략한다.
        """
        self.quota.start()
        if start_scheduler:
            self.run_lock.reset()

        storage_config = self.config_manager.storage_config
        if start_scheduler and storage_config.auto_cleanup_enabled:
            self.scheduler.start(run_immediately=storage_config.cleanup_on_startup)
        elif start_scheduler and storage_config.cleanup_on_startup:
            self.trigger_cleanup_now()

        self._started = True
        logger.info("Retention service started")

    def stop(self):
        """스케줄러 정지 (진행 중인 패스는 완료까지 대기) 후 장부 분리"""
        self.scheduler.stop()
        self.quota.stop()
        self._started = False
        logger.info("Retention service stopped")

    @property
    def is_started(self) -> bool:
        return self._started

    # ========== 조회 ==========

    def get_storage_stats(self) -> StorageStats:
        """카메라별/전체 사용량과 할당"""
        used = self.quota.snapshot()
        camera_ids = set(used) | {cam.camera_id for cam in self.config_manager.get_all_cameras()}

        try:
            disk = self.storage.get_disk_usage()
        except StorageError:
            disk = None

        return StorageStats(
            used_bytes_by_camera={cam: used.get(cam, 0) for cam in sorted(camera_ids)},
            used_global_bytes=self.quota.used_global,
            quota_by_camera={cam: self.quota.quota_for(cam) for cam in sorted(camera_ids)},
            global_quota=self.config_manager.global_quota_bytes,
            disk=disk,
        )

    def get_retention_stats(self) -> RetentionStats:
        """상태별 개수/크기, 보호 개수, 만료 예정/경과 개수"""
        now = self.clock()
        return RetentionStats(
            by_status=self.registry.count_by_status(),
            protected=self.registry.count_protected(),
            expiring_within_24h=self.registry.count_expiring(now, now + timedelta(hours=24)),
            expiring_within_7d=self.registry.count_expiring(now, now + timedelta(days=7)),
            overdue=self.registry.count_expiring(now),
        )

    def preview_cleanup(self) -> CleanupPreview:
        """다음 정리 패스의 삭제 후보 (변경 없음)"""
        return self.cleaner.preview()

    # ========== 조작 ==========

    def set_protected(self, segment_id: str, protected: bool) -> Segment:
        """세그먼트 보호 플래그 설정 (보호 중에는 보존/용량 정리 모두 제외)"""
        return self.registry.set_protected(segment_id, protected)

    def trigger_cleanup_now(self) -> CleanupReport:
        """즉시 정리 패스 실행 (다른 패스가 실행 중이면 skipped)"""
        report = self.scheduler.run_once()
        if not report.skipped:
            self._trigger_callbacks('cleanup_completed', report)
            if report.stuck_over_quota:
                self._trigger_callbacks('stuck_over_quota', list(report.stuck_over_quota))
        return report

    def recompute_retention(self, camera_id: Optional[str] = None,
                            allow_immediate_expiry: bool = False) -> RecomputeResult:
        """정책 변경 후 기존 세그먼트의 보존 기한 재계산"""
        grace = timedelta(hours=self.config_manager.storage_config.recompute_grace_hours)
        return self.resolver.recompute_deadlines(
            self.registry, self.clock(), camera_id=camera_id,
            grace=grace, allow_immediate_expiry=allow_immediate_expiry,
        )

    def reconcile_quota(self) -> List[QuotaLedgerDrift]:
        """용량 장부 전체 재계산"""
        drifts = self.quota.recount_all()
        logger.info(f"Quota reconciled: {len(drifts)} cameras drifted")
        return drifts

    def repair_missing_files(self) -> int:
        return self.cleaner.repair_missing_files()

    def cleanup_orphaned_files(self) -> int:
        return self.cleaner.cleanup_orphaned_files()

    def purge_deleted_metadata(self) -> int:
        return self.cleaner.purge_deleted_metadata()

    def get_status(self) -> Dict[str, Any]:
        """서비스 상태 요약"""
        last_report = self.scheduler.last_report
        return {
            'started': self._started,
            'scheduler_running': self.scheduler.is_running,
            'storage_path_available': self.storage.is_path_available(),
            'last_run': self.scheduler.last_run.isoformat() if self.scheduler.last_run else None,
            'last_report': last_report.to_dict() if last_report else None,
            'storage': self.get_storage_stats().to_dict(),
        }
