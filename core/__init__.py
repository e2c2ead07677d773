"""
NVR Retention Core Module

녹화 세그먼트의 수명 주기, 보존 정책, 용량 할당, 정리 작업을 담당합니다.

Modules:
    - models: 세그먼트/정리 결과 데이터 모델
    - enums: 세그먼트 상태, 정리 사유, 경고 수준
    - exceptions: 커스텀 예외 클래스
    - config: 설정 관리
    - segment_registry: 세그먼트 메타데이터 저장소
    - retention: 보존 기한 계산
    - quota: 용량 장부
    - cleanup: 정리 계획/실행
    - scheduler: 주기적 정리 실행
    - storage: 파일 시스템 작업
"""

from .models import Segment, SegmentHandle, SegmentMetadata, CleanupCandidate, CleanupPreview, CleanupReport
from .enums import SegmentStatus, CleanupReason, AlertLevel
from .exceptions import (
    NVRException, SegmentError, InvalidTransition, DuplicateFilename, AlreadyDeleted,
    SegmentNotFound, InvalidSegment, PolicyUnresolved, QuotaLedgerDrift, FileDeletionFailed,
    StorageError, ConfigurationError,
)
from .config import ConfigManager, StorageConfig, CameraConfigData
from .segment_registry import SegmentRegistry
from .retention import RetentionPolicyResolver, resolve_deadline
from .quota import QuotaAccountant
from .storage import StorageService

__all__ = [
    'Segment',
    'SegmentHandle',
    'SegmentMetadata',
    'CleanupCandidate',
    'CleanupPreview',
    'CleanupReport',
    'SegmentStatus',
    'CleanupReason',
    'AlertLevel',
    'NVRException',
    'SegmentError',
    'InvalidTransition',
    'DuplicateFilename',
    'AlreadyDeleted',
    'SegmentNotFound',
    'InvalidSegment',
    'PolicyUnresolved',
    'QuotaLedgerDrift',
    'FileDeletionFailed',
    'StorageError',
    'ConfigurationError',
    'ConfigManager',
    'StorageConfig',
    'CameraConfigData',
    'SegmentRegistry',
    'RetentionPolicyResolver',
    'resolve_deadline',
    'QuotaAccountant',
    'StorageService'
]
