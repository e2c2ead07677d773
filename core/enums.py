"""
보존/스토리지 엔진 전체에서 사용되는 열거형 정의
"""
from enum import Enum


class SegmentStatus(Enum):
    """녹화 세그먼트 상태"""
    RECORDING = "recording"
    COMPLETED = "completed"
    CORRUPTED = "corrupted"
    DELETED = "deleted"

    @classmethod
    def cleanup_eligible(cls):
        """정리 대상이 될 수 있는 상태 (녹화 중인 세그먼트는 절대 포함하지 않음)"""
        return (cls.COMPLETED, cls.CORRUPTED)

    @classmethod
    def live(cls):
        """삭제되지 않은 상태"""
        return (cls.RECORDING, cls.COMPLETED, cls.CORRUPTED)


class CleanupReason(Enum):
    """세그먼트 삭제 사유"""
    RETENTION = "retention"        # 보존 기한 만료
    CAMERA_QUOTA = "camera_quota"  # 카메라 용량 초과
    GLOBAL_QUOTA = "global_quota"  # 전체 용량 초과


class AlertLevel(Enum):
    """용량 경고 레벨"""
    NORMAL = "normal"      # 정상
    WARNING = "warning"    # 경고 (임계값 근접)
    CRITICAL = "critical"  # 위험 (임계값 초과)

    @staticmethod
    def for_usage(used: int, quota, warning_ratio: float = 0.9) -> 'AlertLevel':
        """
        사용량과 할당량으로 경고 레벨 계산

        Returns:
            AlertLevel (할당량이 없으면 항상 NORMAL)
        """
        if not quota:
            return AlertLevel.NORMAL
        if used > quota:
            return AlertLevel.CRITICAL
        if used >= quota * warning_ratio:
            return AlertLevel.WARNING
        return AlertLevel.NORMAL
