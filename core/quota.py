"""
용량 장부 (Quota Accountant)

카메라별/전체 사용량(삭제되지 않은 세그먼트 크기 합계)을 메모리에 유지한다.
레지스트리 변경과 같은 락 안에서 동기 갱신되며, 시작 시 항상 전체 재계산으로 초기화된다.
"""
import threading
from typing import Dict, List, Optional

from loguru import logger

from .exceptions import QuotaLedgerDrift


class QuotaAccountant:
    """카메라별/전체 스토리지 사용량 장부"""

    def __init__(self, registry, config):
        """
        Args:
            registry: SegmentRegistry (재계산 시 원본)
            config: get_storage_quota_bytes(camera_id), global_quota_bytes 제공 객체
        """
        self.registry = registry
        self.config = config
        self._lock = threading.RLock()
        self._used: Dict[str, int] = {}
        self._used_global = 0
        self._started = False

    # ========== 수명 주기 ==========

    def start(self):
        """레지스트리에서 전체 사용량을 다시 읽은 뒤 연결 (이전 메모리 값은 신뢰하지 않음)"""
        with self.registry.db.lock:
            sizes = self.registry.sizes_by_camera()
            with self._lock:
                self._used = dict(sizes)
                self._used_global = sum(sizes.values())
            self.registry.attach_quota(self)
            self._started = True

        logger.info(f"Quota ledger initialized: {len(self._used)} cameras, "
                    f"{self._used_global / (1024 ** 3):.2f} GB in use")

    def stop(self):
        """레지스트리 연결 해제"""
        self.registry.detach_quota(self)
        self._started = False
        logger.debug("Quota ledger detached")

    @property
    def started(self) -> bool:
        return self._started

    # ========== 증감 ==========

    def on_segment_finalized(self, camera_id: str, size: int):
        with self._lock:
            self._used[camera_id] = self._used.get(camera_id, 0) + size
            self._used_global += size

    def on_segment_removed(self, camera_id: str, size: int):
        """
        사용량 차감 (0 미만이면 장부 불일치로 보고 재계산)
        """
        drift = None
        with self._lock:
            cached = self._used.get(camera_id, 0)
            remaining = cached - size
            if remaining < 0:
                drift = QuotaLedgerDrift(camera_id, cached, remaining)
                remaining = 0
            self._used[camera_id] = remaining
            self._used_global = max(0, self._used_global - size)

        if drift is not None:
            logger.warning(f"[QUOTA] {drift.message} (negative after removal), recounting")
            self.recount(camera_id)

    # ========== 조회 ==========

    def used_bytes(self, camera_id: str) -> int:
        with self._lock:
            return self._used.get(camera_id, 0)

    @property
    def used_global(self) -> int:
        with self._lock:
            return self._used_global

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._used)

    def quota_for(self, camera_id: str) -> Optional[int]:
        return self.config.get_storage_quota_bytes(camera_id)

    def is_camera_over_quota(self, camera_id: str, used: Optional[int] = None) -> bool:
        quota = self.quota_for(camera_id)
        if quota is None:
            return False
        return (self.used_bytes(camera_id) if used is None else used) > quota

    def is_global_over_quota(self, used: Optional[int] = None) -> bool:
        quota = self.config.global_quota_bytes
        if quota is None:
            return False
        return (self.used_global if used is None else used) > quota

    def is_over_quota(self, camera_id: str) -> bool:
        """카메라 할당 초과 또는 전체 할당 초과"""
        return self.is_camera_over_quota(camera_id) or self.is_global_over_quota()

    def over_quota_cameras(self) -> List[str]:
        """카메라 할당을 초과한 카메라 목록"""
        return [cam for cam in sorted(self.snapshot()) if self.is_camera_over_quota(cam)]

    # ========== 재계산 ==========

    def recount(self, camera_id: str) -> Optional[QuotaLedgerDrift]:
        """
        레지스트리에서 카메라 사용량을 다시 계산해 캐시 교체

        레지스트리 락을 잡은 상태로 읽기만 수행하므로 수집과 동시에 실행해도 안전하다.

        Returns:
            불일치가 있었으면 QuotaLedgerDrift, 없으면 None
        """
        with self.registry.db.lock:
            actual = self.registry.sum_sizes(camera_id)
            with self._lock:
                cached = self._used.get(camera_id, 0)
                self._used[camera_id] = actual
                self._used_global = sum(self._used.values())

        if cached != actual:
            drift = QuotaLedgerDrift(camera_id, cached, actual)
            logger.warning(f"[QUOTA] {drift.message}, ledger repaired")
            return drift
        return None

    def recount_all(self) -> List[QuotaLedgerDrift]:
        """모든 카메라 재계산"""
        drifts = []
        with self.registry.db.lock:
            cameras = set(self.registry.camera_ids()) | set(self.snapshot())
            for camera_id in sorted(cameras):
                drift = self.recount(camera_id)
                if drift is not None:
                    drifts.append(drift)
        return drifts
