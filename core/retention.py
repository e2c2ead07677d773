"""
보존 정책 해석기 (Retention Policy Resolver)

세그먼트 시작 시각과 카메라/전역 보존 기간으로 보존 기한을 계산한다.
기한은 달력 기준 일(day) 단위로 더한다. 타임존이 주어지면 해당 타임존의
벽시계 시각 기준으로 계산하므로 DST 전환일에도 같은 시각이 유지된다.
"""
from datetime import datetime, timedelta
from typing import Optional, TYPE_CHECKING
from zoneinfo import ZoneInfo

from loguru import logger

from .enums import SegmentStatus
from .exceptions import PolicyUnresolved, InvalidTransition, AlreadyDeleted
from .models import RecomputeResult

if TYPE_CHECKING:
    from .segment_registry import SegmentRegistry


def effective_retention_days(camera_days: Optional[int], global_days: Optional[int]) -> Optional[int]:
    """카메라 override가 양수이면 우선, 아니면 전역 기본값"""
    if camera_days is not None and camera_days > 0:
        return camera_days
    return global_days


def resolve_deadline(start_time: datetime,
                     camera_retention_days: Optional[int],
                     global_default_days: Optional[int],
                     tz: Optional[str] = None,
                     camera_id: str = "") -> datetime:
    """
    보존 기한 계산 (순수 함수)

    Args:
        start_time: 세그먼트 시작 시각
        camera_retention_days: 카메라 보존 기간 (None이면 전역 기본값)
        global_default_days: 전역 기본 보존 기간
        tz: 달력 계산에 사용할 IANA 타임존 이름
        camera_id: 오류 메시지용 카메라 ID

    Returns:
        보존 기한 (0일 이하이면 start_time 자체 → 즉시 삭제 대상)

    Raises:
        PolicyUnresolved: 카메라/전역 설정이 모두 없을 때
    """
    days = effective_retention_days(camera_retention_days, global_default_days)
    if days is None:
        raise PolicyUnresolved(camera_id)

    if days <= 0:
        return start_time

    if tz:
        # ZoneInfo 기준 덧셈은 벽시계 시각 유지, UTC 오프셋은 도착 날짜 기준으로 다시 계산됨
        return start_time.astimezone(ZoneInfo(tz)) + timedelta(days=days)

    # 타임존 미설정: 시스템 로컬 벽시계 기준으로 날짜를 더한 뒤 도착 시점의 오프셋 적용
    local_wall = start_time.astimezone().replace(tzinfo=None)
    return (local_wall + timedelta(days=days)).astimezone()


class RetentionPolicyResolver:
    """설정 제공자에 바인딩된 보존 정책 해석기"""

    def __init__(self, config):
        """
        Args:
            config: get_retention_days(camera_id), global_retention_days, timezone 을 제공하는 객체
                    (보통 ConfigManager)
        """
        self.config = config

    def resolve(self, camera_id: str, start_time: datetime) -> datetime:
        return resolve_deadline(
            start_time,
            self.config.get_retention_days(camera_id),
            self.config.global_retention_days,
            tz=getattr(self.config, "timezone", None),
            camera_id=camera_id,
        )

    def recompute_deadlines(self, registry: 'SegmentRegistry', now: datetime,
                            camera_id: Optional[str] = None,
                            grace: timedelta = timedelta(hours=24),
                            allow_immediate_expiry: bool = False) -> RecomputeResult:
        """
        정책 변경 후 기존 세그먼트의 보존 기한 재계산 (명시적 유지보수 작업)

        새 기한이 과거가 되는 세그먼트(기존 기한은 미래)는 min(기존 기한, now + grace) 로 보정한다.
        allow_immediate_expiry=True 이면 보정 없이 그대로 적용한다.

        Args:
            registry: 세그먼트 레지스트리
            now: 기준 시각
            camera_id: 특정 카메라만 재계산 (None이면 전체)
            grace: 즉시 만료 방지 유예 시간
            allow_immediate_expiry: 즉시 만료 허용 여부
        """
        result = RecomputeResult()
        camera_ids = [camera_id] if camera_id else registry.camera_ids()

        for cam in camera_ids:
            segments = [
                s for s in registry.query_by_camera(cam)
                if s.status in SegmentStatus.cleanup_eligible()
            ]
            for segment in segments:
                try:
                    deadline = self.resolve(cam, segment.start_time)
                except PolicyUnresolved:
                    result.unresolved.append(segment.filename)
                    continue

                was_future = segment.retention_deadline is None or segment.retention_deadline > now
                if deadline <= now and was_future and not allow_immediate_expiry:
                    # 이미 보정된 기한은 다시 연장하지 않음
                    deadline = now + grace
                    if segment.retention_deadline is not None:
                        deadline = min(segment.retention_deadline, deadline)
                    if deadline != segment.retention_deadline:
                        result.clamped += 1

                if deadline == segment.retention_deadline:
                    continue

                try:
                    registry.set_retention_deadline(segment.handle, deadline)
                    result.updated += 1
                except (InvalidTransition, AlreadyDeleted):
                    # 재계산 도중 삭제/상태 변경된 세그먼트
                    logger.debug(f"Segment changed during recompute, skipped: {segment.filename}")

        if result.clamped:
            logger.warning(f"[RETENTION] {result.clamped} segments would expire immediately after policy change; "
                           f"deadline deferred to now + {grace}")
        if result.unresolved:
            logger.error(f"[RETENTION] No retention policy for {len(result.unresolved)} segments "
                         f"(camera={camera_id or 'all'}), deadlines left unchanged")

        logger.info(f"Retention deadlines recomputed: camera={camera_id or 'all'}, "
                    f"updated={result.updated}, clamped={result.clamped}")
        return result
