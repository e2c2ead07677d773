"""
보존 엔진 도메인 모델 및 엔티티
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List, Set
from .enums import SegmentStatus, CleanupReason, AlertLevel


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class SegmentMetadata:
    """스트림 메타데이터 (정보용)"""
    resolution: Optional[str] = None
    codec: Optional[str] = None
    bitrate: Optional[int] = None
    fps: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SegmentMetadata':
        """딕셔너리에서 생성 (알 수 없는 키는 무시)"""
        if not data:
            return cls()
        return cls(
            resolution=data.get("resolution"),
            codec=data.get("codec"),
            bitrate=data.get("bitrate"),
            fps=data.get("fps"),
        )

    def to_dict(self) -> dict:
        """딕셔너리 변환"""
        return {
            "resolution": self.resolution,
            "codec": self.codec,
            "bitrate": self.bitrate,
            "fps": self.fps,
        }


@dataclass(frozen=True)
class SegmentHandle:
    """레지스트리가 발급하는 세그먼트 핸들"""
    filename: str
    camera_id: str
    file_path: str


@dataclass
class Segment:
    """녹화 세그먼트 도메인 엔티티"""
    filename: str
    camera_id: str
    file_path: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_seconds: float = 0.0
    size: int = 0
    status: SegmentStatus = SegmentStatus.RECORDING
    protected: bool = False
    event_tags: Set[str] = field(default_factory=set)
    metadata: SegmentMetadata = field(default_factory=SegmentMetadata)
    retention_deadline: Optional[datetime] = None
    corrupted_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def handle(self) -> SegmentHandle:
        return SegmentHandle(self.filename, self.camera_id, self.file_path)

    def is_cleanup_eligible(self) -> bool:
        """자동 삭제 가능 여부 (보호 플래그 + 상태)"""
        return not self.protected and self.status in SegmentStatus.cleanup_eligible()

    def to_dict(self) -> dict:
        """딕셔너리 변환"""
        return {
            "filename": self.filename,
            "camera_id": self.camera_id,
            "file_path": self.file_path,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration_seconds": self.duration_seconds,
            "size": self.size,
            "status": self.status.value,
            "protected": self.protected,
            "event_tags": sorted(self.event_tags),
            "metadata": self.metadata.to_dict(),
            "retention_deadline": _iso(self.retention_deadline),
            "corrupted_reason": self.corrupted_reason,
        }


@dataclass
class CleanupCandidate:
    """삭제 후보"""
    camera_id: str
    filename: str
    start_time: datetime
    size: int
    reason: CleanupReason
    file_path: str = ""

    @classmethod
    def from_segment(cls, segment: Segment, reason: CleanupReason) -> 'CleanupCandidate':
        return cls(
            camera_id=segment.camera_id,
            filename=segment.filename,
            start_time=segment.start_time,
            size=segment.size,
            reason=reason,
            file_path=segment.file_path,
        )

    def to_dict(self) -> dict:
        """딕셔너리 변환"""
        return {
            "camera": self.camera_id,
            "filename": self.filename,
            "startTime": _iso(self.start_time),
            "size": self.size,
            "reason": self.reason.value,
        }


@dataclass
class CleanupPreview:
    """정리 미리보기 결과 (변경 없음)"""
    candidates: List[CleanupCandidate] = field(default_factory=list)
    stuck_over_quota: List[str] = field(default_factory=list)

    @property
    def total_bytes_freed(self) -> int:
        return sum(c.size for c in self.candidates)

    def to_dict(self) -> dict:
        """딕셔너리 변환"""
        return {
            "candidates": [c.to_dict() for c in self.candidates],
            "totalBytesFreed": self.total_bytes_freed,
            "stuckOverQuota": list(self.stuck_over_quota),
        }


@dataclass
class CleanupReport:
    """정리 패스 실행 결과"""
    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped: bool = False
    aborted: bool = False
    deleted: List[CleanupCandidate] = field(default_factory=list)
    failed: List[CleanupCandidate] = field(default_factory=list)
    missing_files: List[str] = field(default_factory=list)
    stuck_over_quota: List[str] = field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted)

    @property
    def freed_bytes(self) -> int:
        return sum(c.size for c in self.deleted)

    def deleted_for_camera(self, camera_id: str) -> List[CleanupCandidate]:
        return [c for c in self.deleted if c.camera_id == camera_id]

    def to_dict(self) -> dict:
        """딕셔너리 변환"""
        return {
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "skipped": self.skipped,
            "aborted": self.aborted,
            "deleted": self.deleted_count,
            "freed": self.freed_bytes,
            "freedGB": f"{self.freed_bytes / (1024 ** 3):.2f}",
            "failed": [c.filename for c in self.failed],
            "missing_files": list(self.missing_files),
            "stuck_over_quota": list(self.stuck_over_quota),
        }


@dataclass
class DiskUsage:
    """디스크 사용량 정보"""
    total_space: int  # bytes
    used_space: int  # bytes
    free_space: int  # bytes

    @property
    def usage_percent(self) -> float:
        """사용률 계산"""
        if self.total_space > 0:
            return (self.used_space / self.total_space) * 100
        return 0.0

    def to_dict(self) -> dict:
        return {
            "total_bytes": self.total_space,
            "used_bytes": self.used_space,
            "free_bytes": self.free_space,
            "usage_percent": round(self.usage_percent, 1),
        }


@dataclass
class StorageStats:
    """카메라별/전체 스토리지 사용량"""
    used_bytes_by_camera: Dict[str, int] = field(default_factory=dict)
    used_global_bytes: int = 0
    quota_by_camera: Dict[str, Optional[int]] = field(default_factory=dict)
    global_quota: Optional[int] = None
    disk: Optional[DiskUsage] = None

    def camera_alert_level(self, camera_id: str) -> AlertLevel:
        return AlertLevel.for_usage(
            self.used_bytes_by_camera.get(camera_id, 0),
            self.quota_by_camera.get(camera_id),
        )

    @property
    def global_alert_level(self) -> AlertLevel:
        return AlertLevel.for_usage(self.used_global_bytes, self.global_quota)

    def to_dict(self) -> dict:
        """딕셔너리 변환"""
        return {
            "usedBytesByCamera": dict(self.used_bytes_by_camera),
            "usedGlobalBytes": self.used_global_bytes,
            "quotaByCamera": dict(self.quota_by_camera),
            "globalQuota": self.global_quota,
            "disk": self.disk.to_dict() if self.disk else None,
        }


@dataclass
class RetentionStats:
    """보존 통계"""
    by_status: Dict[str, Dict[str, int]] = field(default_factory=dict)
    protected: int = 0
    expiring_within_24h: int = 0
    expiring_within_7d: int = 0
    overdue: int = 0

    @property
    def total_count(self) -> int:
        return sum(s["count"] for s in self.by_status.values())

    @property
    def total_size(self) -> int:
        return sum(s["size"] for s in self.by_status.values())

    def to_dict(self) -> dict:
        """딕셔너리 변환"""
        return {
            "byStatus": self.by_status,
            "total": {"count": self.total_count, "size": self.total_size},
            "retention": {
                "protected": self.protected,
                "expiringWithin24h": self.expiring_within_24h,
                "expiringWithin7d": self.expiring_within_7d,
                "overdue": self.overdue,
            },
        }


@dataclass
class RecomputeResult:
    """보존 기한 재계산 결과"""
    updated: int = 0
    clamped: int = 0
    unresolved: List[str] = field(default_factory=list)
