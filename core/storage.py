"""
스토리지 관리 서비스

녹화 경로 검증, 세그먼트 파일 삭제, 디스크 사용량, 고아 파일/빈 디렉토리 정리 등
파일 시스템 측 작업만 담당한다. 메타데이터 변경은 SegmentRegistry 가 담당한다.
"""
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List

import psutil
from loguru import logger

from .exceptions import FileDeletionFailed, StorageError
from .models import DiskUsage


SEGMENT_EXTENSIONS = (".mp4", ".mkv", ".ts")


class StorageService:
    """스토리지 관리 서비스"""

    def __init__(self, recordings_path: str = "./recordings",
                 clock: Callable[[], datetime] = None):
        """
        Initialize storage service

        Args:
            recordings_path: 녹화 파일 저장 경로
            clock: 고아 파일 나이 판단용 시계
        """
        # 경로 검증 (Fallback 없음 - 오류 시 경고만 표시)
        self.recordings_path = Path(recordings_path)
        self.clock = clock or (lambda: datetime.now().astimezone())
        self._path_available = self._validate_storage_path()

        if self._path_available:
            logger.info(f"Storage service initialized: path={self.recordings_path}")
        else:
            logger.error(f"Storage service initialized with UNAVAILABLE path: {self.recordings_path}")

    # ========== 디스크 ==========

    def get_disk_usage(self) -> DiskUsage:
        """
        녹화 경로가 위치한 디스크 사용량 조회

        Raises:
            StorageError: 조회 실패
        """
        try:
            stat = psutil.disk_usage(str(self.recordings_path))
            return DiskUsage(total_space=stat.total, used_space=stat.used, free_space=stat.free)
        except OSError as e:
            logger.error(f"Failed to get disk usage: {e}")
            raise StorageError(f"Failed to get disk usage: {e}")

    # ========== 파일 삭제 ==========

    def delete_file(self, file_path: str) -> bool:
        """
        세그먼트 파일 삭제

        Returns:
            True: 삭제됨, False: 이미 없음 (호출자가 레코드만 정리)

        Raises:
            FileDeletionFailed: 권한 등 그 외 OS 오류
        """
        path = Path(file_path)
        try:
            path.unlink()
            logger.debug(f"Deleted file: {path.name}")
            return True
        except FileNotFoundError:
            logger.warning(f"File already missing: {path}")
            return False
        except OSError as e:
            raise FileDeletionFailed(str(path), str(e))

    def file_exists(self, file_path: str) -> bool:
        return Path(file_path).is_file()

    # ========== 고아 파일 / 빈 디렉토리 ==========

    def iter_segment_files(self):
        """recordings/<camera>/<date>/ 아래 세그먼트 파일 순회"""
        if not self.recordings_path.exists():
            return
        for camera_dir in self.recordings_path.iterdir():
            if not camera_dir.is_dir():
                continue
            for date_dir in camera_dir.iterdir():
                if not date_dir.is_dir():
                    continue
                for file in date_dir.iterdir():
                    if file.is_file() and file.suffix.lower() in SEGMENT_EXTENSIONS:
                        yield file

    def find_orphaned_files(self, known_paths: set, min_age_hours: int = 24) -> List[Path]:
        """
        레지스트리에 없는 세그먼트 파일 검색

        Args:
            known_paths: 삭제되지 않은 세그먼트 파일 경로 집합
            min_age_hours: 이보다 최근에 수정된 파일은 녹화 중일 수 있어 제외
        """
        cutoff = (self.clock() - timedelta(hours=min_age_hours)).timestamp()
        orphans = []
        for file in self.iter_segment_files():
            if str(file) in known_paths:
                continue
            try:
                if file.stat().st_mtime > cutoff:
                    continue
            except FileNotFoundError:
                continue
            orphans.append(file)
        return orphans

    def cleanup_orphaned_files(self, known_paths: set, min_age_hours: int = 24) -> int:
        """
        고아 파일 삭제

        Returns:
            삭제된 파일 수
        """
        deleted_count = 0
        deleted_size = 0
        for file in self.find_orphaned_files(known_paths, min_age_hours):
            try:
                size = file.stat().st_size
                file.unlink()
                deleted_count += 1
                deleted_size += size
                logger.debug(f"Deleted orphaned file: {file}")
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Failed to delete orphaned file {file}: {e}")

        self.cleanup_empty_directories()

        if deleted_count > 0:
            logger.success(f"Orphan cleanup completed: {deleted_count} files deleted, "
                           f"{deleted_size / (1024 ** 3):.2f}GB freed")
        else:
            logger.info("No orphaned files found")
        return deleted_count

    def cleanup_empty_directories(self) -> int:
        """빈 날짜/카메라 디렉토리 정리"""
        removed = 0
        if not self.recordings_path.exists():
            return removed

        for camera_dir in self.recordings_path.iterdir():
            if not camera_dir.is_dir():
                continue

            # 빈 날짜 디렉토리 제거
            for date_dir in camera_dir.iterdir():
                if date_dir.is_dir() and not any(date_dir.iterdir()):
                    try:
                        date_dir.rmdir()
                        removed += 1
                        logger.debug(f"Removed empty date directory: {date_dir}")
                    except OSError as e:
                        logger.debug(f"Could not remove {date_dir}: {e}")

            # 빈 카메라 디렉토리 제거
            if not any(camera_dir.iterdir()):
                try:
                    camera_dir.rmdir()
                    removed += 1
                    logger.debug(f"Removed empty camera directory: {camera_dir}")
                except OSError as e:
                    logger.debug(f"Could not remove {camera_dir}: {e}")
        return removed

    # ========== 경로 검증 ==========

    def _validate_storage_path(self) -> bool:
        """
        저장 경로 검증 (Fallback 없이 오류만 로깅)

        Returns:
            bool: 경로가 유효하면 True, 아니면 False
        """
        # 1. Windows: 드라이브 존재 여부 확인
        if os.name == 'nt':
            drive = os.path.splitdrive(str(self.recordings_path))[0]
            if drive and not os.path.exists(drive + os.sep):
                logger.error(f"[STORAGE] Drive not found: {drive}")
                return False

        # 2. 디렉토리 생성 시도
        try:
            self.recordings_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"[STORAGE] Failed to create directory: {e}")
            logger.error(f"[STORAGE] Path: {self.recordings_path}")
            return False

        # 3. 쓰기 권한 테스트
        test_file = self.recordings_path / ".write_test.tmp"
        try:
            test_file.touch()
            test_file.unlink()
        except OSError as e:
            logger.error(f"[STORAGE] No write permission: {e}")
            logger.error(f"[STORAGE] Path: {self.recordings_path}")
            return False

        # 4. 디스크 공간 확인 (경고만, 실패는 아님)
        try:
            free_gb = psutil.disk_usage(str(self.recordings_path)).free / (1024 ** 3)
            if free_gb < 1.0:
                logger.warning(f"[STORAGE] Low disk space: {free_gb:.2f}GB")
        except OSError as e:
            logger.debug(f"[STORAGE] Disk space check skipped: {e}")

        logger.debug(f"[STORAGE] Path validated successfully: {self.recordings_path}")
        return True

    def is_path_available(self) -> bool:
        """
        저장 경로 사용 가능 여부 확인
        """
        return self._path_available
