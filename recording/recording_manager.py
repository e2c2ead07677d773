"""
녹화 관리자
녹화 파이프라인이 만든 세그먼트 파일을 레지스트리에 등록/완료/손상 처리하는 모듈
"""

import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from loguru import logger

from core.exceptions import DuplicateFilename, InvalidSegment, PolicyUnresolved
from core.models import Segment, SegmentHandle, SegmentMetadata
from core.segment_registry import SegmentRegistry, default_filename, ensure_aware


@dataclass
class PendingCompletion:
    """보존 정책이 없어 완료 처리가 보류된 세그먼트"""
    handle: SegmentHandle
    end_time: datetime
    size: int
    metadata: Optional[SegmentMetadata] = None
    event_tags: List[str] = field(default_factory=list)
    attempts: int = 1


class RecordingManager:
    """전체 녹화 관리자 (세그먼트 수집 어댑터)"""

    def __init__(self, registry: SegmentRegistry, file_format: str = "mp4",
                 max_filename_retries: int = 5):
        """
        녹화 관리자 초기화

        Args:
            registry: 세그먼트 레지스트리
            file_format: 파일 포맷 (mp4, mkv)
            max_filename_retries: 파일명 중복 시 재생성 시도 횟수
        """
        self.registry = registry
        self.file_format = file_format
        self.max_filename_retries = max_filename_retries

        self._lock = threading.Lock()
        self.active_segments: Dict[str, SegmentHandle] = {}  # camera_id -> 녹화 중 세그먼트
        self.pending: Dict[str, PendingCompletion] = {}  # filename -> 보류된 완료 처리

        logger.info(f"Recording manager initialized: {self.registry.recording_path}")

    def _create_recording_dir(self, handle: SegmentHandle):
        """카메라/날짜별 녹화 디렉토리 생성"""
        Path(handle.file_path).parent.mkdir(parents=True, exist_ok=True)

    def _get_file_size(self, file_path: str) -> Optional[int]:
        """녹화 파일 크기 반환 (bytes, 없으면 None)"""
        if os.path.exists(file_path):
            return os.path.getsize(file_path)
        return None

    def notify_segment_start(self, camera_id: str, start_time: Optional[datetime] = None) -> SegmentHandle:
        """
        세그먼트 녹화 시작 등록

        파일명이 중복되면 일련번호를 붙여 다시 생성한다.

        Raises:
            DuplicateFilename: 재시도 횟수를 모두 소진했을 때
        """
        start_time = ensure_aware(start_time or self.registry.clock())

        handle = None
        for attempt in range(self.max_filename_retries + 1):
            filename = default_filename(camera_id, start_time, self.file_format)
            if attempt:
                stem, ext = os.path.splitext(filename)
                filename = f"{stem}_{attempt}{ext}"
            try:
                handle = self.registry.create_segment(camera_id, start_time, filename=filename)
                break
            except DuplicateFilename:
                logger.debug(f"Duplicate segment filename, regenerating: {filename}")
                if attempt == self.max_filename_retries:
                    raise

        self._create_recording_dir(handle)

        with self._lock:
            previous = self.active_segments.get(camera_id)
            if previous is not None:
                logger.warning(f"Camera {camera_id} started a new segment while {previous.filename} "
                               f"is still recording")
            self.active_segments[camera_id] = handle

        logger.info(f"Segment recording started: {handle.filename}")
        return handle

    def notify_segment_complete(self, handle: SegmentHandle, end_time: datetime,
                                size: Optional[int] = None,
                                metadata: Optional[SegmentMetadata] = None,
                                event_tags: Optional[Sequence[str]] = None) -> Optional[Segment]:
        """
        세그먼트 녹화 완료 처리

        size 를 주지 않으면 파일 크기를 사용하며, 파일이 없거나 비어 있으면 손상 처리한다.
        보존 정책이 없으면(PolicyUnresolved) 보류 목록에 남기고 None 을 반환한다.

        Returns:
            완료(또는 손상) 처리된 세그먼트, 보류 시 None
        """
        if size is None:
            size = self._get_file_size(handle.file_path)
            if not size:
                reason = "segment file missing" if size is None else "segment file is empty"
                return self.notify_segment_corrupted(handle, reason)

        try:
            segment = self.registry.finalize_segment(handle, end_time, size, metadata, event_tags)
        except PolicyUnresolved as e:
            with self._lock:
                entry = self.pending.get(handle.filename)
                if entry is None:
                    self.pending[handle.filename] = PendingCompletion(
                        handle, end_time, size, metadata, list(event_tags or ())
                    )
                else:
                    entry.attempts += 1
            logger.error(f"[RETENTION] {e.message}; segment {handle.filename} left pending")
            return None
        except InvalidSegment as e:
            logger.warning(f"Segment validation failed: {e.message}")
            return self.notify_segment_corrupted(handle, e.message)

        self._release(handle)
        logger.info(f"Segment completed: {segment.filename} ({segment.size / (1024 ** 2):.2f} MB)")
        return segment

    def notify_segment_corrupted(self, handle: SegmentHandle, reason: str) -> Segment:
        """세그먼트 손상 처리"""
        segment = self.registry.mark_corrupted(handle, reason)
        self._release(handle)
        return segment

    def _release(self, handle: SegmentHandle):
        with self._lock:
            self.pending.pop(handle.filename, None)
            if self.active_segments.get(handle.camera_id) == handle:
                del self.active_segments[handle.camera_id]

    def retry_pending(self) -> int:
        """
        보류된 완료 처리 재시도 (설정 수정 후 호출)

        Returns:
            완료 처리된 세그먼트 수
        """
        with self._lock:
            entries = list(self.pending.values())

        completed = 0
        for entry in entries:
            segment = self.notify_segment_complete(
                entry.handle, entry.end_time, entry.size, entry.metadata, entry.event_tags
            )
            if segment is not None:
                completed += 1

        if entries:
            logger.info(f"Retried {len(entries)} pending segments: {completed} completed")
        return completed

    def get_pending(self) -> List[PendingCompletion]:
        with self._lock:
            return list(self.pending.values())

    def get_active_segment(self, camera_id: str) -> Optional[SegmentHandle]:
        with self._lock:
            return self.active_segments.get(camera_id)

    def is_recording(self, camera_id: str) -> bool:
        """특정 카메라가 녹화 중인지 확인"""
        return self.get_active_segment(camera_id) is not None

