"""
세그먼트 정리 (Cleanup Planner / Segment Cleaner)

정리 대상은 두 가지 기준으로 선정된다.
1. 보존 기한 경과 (retention)
2. 용량 초과 (카메라별 할당 → 전체 풀 순서)

미리보기(preview)와 실제 정리 패스는 같은 CleanupPlanner 를 사용하므로,
중간에 변경이 없다면 두 결과의 후보 집합은 동일하다.
"""
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from loguru import logger

from .enums import CleanupReason, SegmentStatus
from .exceptions import FileDeletionFailed, InvalidTransition, RunLockLost, SegmentNotFound
from .models import CleanupCandidate, CleanupPreview, CleanupReport, Segment


# 전체 풀이 보호 세그먼트만으로 할당을 초과할 때 stuck_over_quota 에 들어가는 이름
GLOBAL_POOL = "*"


class CleanupPlanner:
    """삭제 후보 계획 (읽기 전용)"""

    def __init__(self, registry, quota):
        self.registry = registry
        self.quota = quota

    def plan_retention(self, now: datetime, exclude: Iterable[str] = ()) -> List[CleanupCandidate]:
        """보존 기한이 지난 미보호 세그먼트 (시작 시각 오름차순)"""
        exclude = set(exclude)
        return [
            CleanupCandidate.from_segment(segment, CleanupReason.RETENTION)
            for segment in self.registry.list_deletion_candidates(
                now, over_quota_cameras=(), global_over_quota=False)
            if segment.filename not in exclude
        ]

    def plan_quota(self, now: datetime, used: Dict[str, int], used_global: int,
                   taken: Iterable[str] = (), exclude: Iterable[str] = ()
                   ) -> Tuple[List[CleanupCandidate], List[str]]:
        """
        용량 초과 해소를 위한 삭제 후보 (오래된 것부터)

        Args:
            now: 기준 시각
            used: 카메라별 사용량 (시뮬레이션용 사본, 이 함수가 수정함)
            used_global: 전체 사용량
            taken: 이미 다른 사유로 선정된 세그먼트 (사용량에서 이미 차감됨)
            exclude: 이번 패스에서 삭제 실패한 세그먼트

        Returns:
            (후보 목록, 보호 세그먼트만 남아 할당을 초과한 카메라 목록)
        """
        taken = set(taken)
        exclude = set(exclude)
        candidates: List[CleanupCandidate] = []
        stuck: List[str] = []

        for camera_id in sorted(used):
            limit = self.quota.quota_for(camera_id)
            if limit is None or used[camera_id] <= limit:
                continue

            blocked = False
            for segment in self.registry.list_deletion_candidates(
                    now, over_quota_cameras=[camera_id], global_over_quota=False):
                if used[camera_id] <= limit:
                    break
                if segment.camera_id != camera_id or segment.filename in taken:
                    continue
                if segment.filename in exclude:
                    blocked = True
                    continue
                candidates.append(CleanupCandidate.from_segment(segment, CleanupReason.CAMERA_QUOTA))
                taken.add(segment.filename)
                used[camera_id] -= segment.size
                used_global -= segment.size

            if used[camera_id] > limit and not blocked:
                stuck.append(camera_id)

        global_limit = self.quota.config.global_quota_bytes
        if global_limit is not None and used_global > global_limit:
            blocked = False
            for segment in self.registry.list_deletion_candidates(
                    now, over_quota_cameras=(), global_over_quota=True):
                if used_global <= global_limit:
                    break
                if segment.filename in taken:
                    continue
                if segment.filename in exclude:
                    blocked = True
                    continue
                candidates.append(CleanupCandidate.from_segment(segment, CleanupReason.GLOBAL_QUOTA))
                taken.add(segment.filename)
                used[segment.camera_id] = used.get(segment.camera_id, 0) - segment.size
                used_global -= segment.size

            if used_global > global_limit and not blocked:
                stuck.append(GLOBAL_POOL)

        return candidates, stuck

    def plan(self, now: datetime, exclude: Iterable[str] = ()) -> CleanupPreview:
        """보존 기한 후보 + (그 삭제를 반영한) 용량 후보"""
        retention = self.plan_retention(now, exclude)

        used = self.quota.snapshot()
        used_global = self.quota.used_global
        for candidate in retention:
            used[candidate.camera_id] = used.get(candidate.camera_id, 0) - candidate.size
            used_global -= candidate.size

        quota_candidates, stuck = self.plan_quota(
            now, used, used_global, taken=[c.filename for c in retention], exclude=exclude
        )
        return CleanupPreview(candidates=retention + quota_candidates, stuck_over_quota=stuck)


class SegmentCleaner:
    """정리 패스 실행 (파일 삭제 → 레코드 삭제 → 용량 차감)"""

    def __init__(self, registry, quota, storage, run_lock, config,
                 clock: Callable[[], datetime] = None):
        """
        Args:
            registry: SegmentRegistry
            quota: QuotaAccountant
            storage: StorageService (파일 시스템)
            run_lock: RunLock (동시 패스 방지)
            config: StorageConfig (임계값/보관 기간)
            clock: 현재 시각 (테스트에서 주입)
        """
        self.registry = registry
        self.quota = quota
        self.storage = storage
        self.run_lock = run_lock
        self.config = config
        self.clock = clock or (lambda: datetime.now().astimezone())
        self.planner = CleanupPlanner(registry, quota)

    def preview(self) -> CleanupPreview:
        """변경 없이 다음 패스의 삭제 후보 계산"""
        return self.planner.plan(self.clock())

    def run_pass(self) -> CleanupReport:
        """
        정리 패스 1회 실행

        다른 패스가 실행 중이면(run-lock 획득 실패) skipped=True 인 보고서를 반환한다.
        """
        now = self.clock()
        report = CleanupReport(started_at=now)

        if not self.run_lock.acquire():
            report.skipped = True
            report.finished_at = self.clock()
            logger.info("Cleanup pass skipped: another pass is running")
            return report

        try:
            failed: Set[str] = set()

            retention = self.planner.plan_retention(now)
            if retention:
                logger.info(f"Retention cleanup: {len(retention)} segments past deadline")
            self._execute(retention, report, failed)

            # 실제 장부 기준으로 용량 초과 재계산, 실패 세그먼트는 제외하고 반복
            while True:
                failures_before = len(failed)
                candidates, stuck = self.planner.plan_quota(
                    now, self.quota.snapshot(), self.quota.used_global, exclude=failed
                )
                if candidates:
                    logger.info(f"Quota cleanup: {len(candidates)} segments to evict")
                self._execute(candidates, report, failed)
                if len(failed) == failures_before:
                    break

            report.stuck_over_quota = stuck
            for camera_id in stuck:
                name = "global pool" if camera_id == GLOBAL_POOL else f"camera {camera_id}"
                logger.warning(f"[QUOTA] {name} still over quota, all remaining segments are protected")

        except RunLockLost as e:
            report.aborted = True
            logger.error(f"[CLEANUP] {e.message}, pass aborted after {report.deleted_count} deletions")

        finally:
            self.run_lock.release()

        report.finished_at = self.clock()
        if report.deleted_count > 0:
            logger.success(f"Cleanup completed: {report.deleted_count} segments deleted, "
                           f"{report.freed_bytes / (1024 ** 3):.2f}GB freed")
        else:
            logger.info("No segments to clean up")
        if report.failed:
            logger.warning(f"Cleanup pass finished with {len(report.failed)} deletion failures")
        return report

    def _current(self, filename: str) -> Optional[Segment]:
        try:
            return self.registry.get_segment(filename)
        except SegmentNotFound:
            return None

    def _still_eligible(self, candidate: CleanupCandidate) -> Optional[Segment]:
        """계획 이후 보호/삭제된 세그먼트는 건너뜀"""
        segment = self._current(candidate.filename)
        if segment is None or not segment.is_cleanup_eligible():
            return None
        return segment

    def _execute(self, candidates: List[CleanupCandidate], report: CleanupReport, failed: Set[str]):
        threshold = self.config.delete_failure_alert_threshold

        for candidate in candidates:
            # 후보마다 락 TTL 연장, 다른 패스가 가져갔으면 즉시 중단
            if not self.run_lock.renew():
                raise RunLockLost(self.run_lock.name)

            if self._still_eligible(candidate) is None:
                logger.debug(f"Candidate no longer eligible, skipped: {candidate.filename}")
                continue

            # 파일 삭제는 레지스트리 락 밖에서 수행
            try:
                existed = self.storage.delete_file(candidate.file_path)
            except FileDeletionFailed as e:
                failed.add(candidate.filename)
                report.failed.append(candidate)
                failures = self.registry.record_delete_failure(candidate.filename)
                if failures >= threshold:
                    logger.error(f"[CLEANUP] {e.message} (failed {failures} times)")
                else:
                    logger.warning(f"[CLEANUP] {e.message}, will retry next pass")
                continue

            if not existed:
                report.missing_files.append(candidate.filename)

            try:
                removed = self.registry.remove_segment(candidate.filename, unprotected_only=True)
            except InvalidTransition as e:
                logger.warning(f"Segment state changed during cleanup: {e.message}")
                continue

            if removed is None:
                current = self._current(candidate.filename)
                if current is not None and current.protected and current.status != SegmentStatus.DELETED:
                    # 확인과 파일 삭제 사이에 보호됨: 레코드는 유지
                    logger.error(f"[CLEANUP] Segment protected during deletion, file already removed: "
                                 f"{candidate.file_path}")
                else:
                    logger.debug(f"Segment already removed: {candidate.filename}")
                continue

            candidate.size = removed.size
            report.deleted.append(candidate)
            logger.debug(f"Deleted segment ({candidate.reason.value}): {candidate.filename} "
                         f"({candidate.size / (1024 ** 2):.1f}MB)")

    # ========== 유지보수 ==========

    def repair_missing_files(self) -> int:
        """
        파일이 사라진 세그먼트 레코드를 삭제 처리

        Returns:
            정리된 레코드 수
        """
        repaired = 0
        for status in SegmentStatus.cleanup_eligible():
            for segment in self.registry.list_by_status(status):
                if self.storage.file_exists(segment.file_path):
                    continue
                if self.registry.remove_segment(segment.filename) is not None:
                    repaired += 1
                    logger.warning(f"Segment file missing, record removed: {segment.file_path}")

        if repaired:
            logger.info(f"Repaired {repaired} segment records with missing files")
        return repaired

    def cleanup_orphaned_files(self) -> int:
        """레지스트리에 없는 오래된 파일 삭제"""
        return self.storage.cleanup_orphaned_files(
            self.registry.live_file_paths(), self.config.orphan_age_hours
        )

    def purge_deleted_metadata(self) -> int:
        """보관 기간이 지난 삭제 레코드(tombstone) 영구 삭제"""
        cutoff = self.clock() - timedelta(days=self.config.deleted_metadata_days)
        return self.registry.purge_deleted(cutoff)

    def run_housekeeping(self) -> Dict[str, int]:
        """정리 패스 이후 유지보수 작업 일괄 실행"""
        return {
            "repaired": self.repair_missing_files(),
            "orphans": self.cleanup_orphaned_files(),
            "empty_dirs": self.storage.cleanup_empty_directories(),
            "purged": self.purge_deleted_metadata(),
        }
