"""
세그먼트 레지스트리 (Segment Registry)

녹화 세그먼트 메타데이터의 원본 저장소. 모든 상태 변경은
`UPDATE ... WHERE status IN (...)` 형태의 compare-and-set 으로 수행되며,
용량 장부(QuotaAccountant) 갱신은 같은 락/트랜잭션 안에서 처리된다.
"""
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Union

from loguru import logger

from .db_manager import DBManager
from .enums import SegmentStatus
from .exceptions import (
    AlreadyDeleted, ConfigurationError, DuplicateFilename, InvalidSegment, InvalidTransition,
    SegmentNotFound,
)
from .models import Segment, SegmentHandle, SegmentMetadata

HandleLike = Union[SegmentHandle, Segment, str]


def default_filename(camera_id: str, start_time: datetime, file_format: str = "mp4") -> str:
    """녹화 파일명 생성: <camera_id>_<YYYYMMDD_HHMMSS>.<format>"""
    timestamp = start_time.strftime("%Y%m%d_%H%M%S")
    return f"{camera_id}_{timestamp}.{file_format}"


def ensure_aware(value: datetime) -> datetime:
    """naive datetime 은 로컬 타임존으로 간주"""
    return value if value.tzinfo is not None else value.astimezone()


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SegmentRegistry:
    """세그먼트 메타데이터 저장소"""

    def __init__(self, db_manager: DBManager, recording_path: str = "./recordings",
                 resolver=None, filename_factory: Callable[[str, datetime], str] = default_filename,
                 clock: Callable[[], datetime] = None):
        """
        Args:
            db_manager: 공유 DBManager (락/커넥션)
            recording_path: 녹화 파일 기본 경로
            resolver: RetentionPolicyResolver (finalize 시 보존 기한 계산)
            filename_factory: (camera_id, start_time) → 파일명
            clock: 감사용 타임스탬프 시계
        """
        self.db = db_manager
        self.recording_path = Path(recording_path)
        self.resolver = resolver
        self.filename_factory = filename_factory
        self.clock = clock or (lambda: datetime.now().astimezone())
        self._quota = None

    # ========== 용량 장부 연결 ==========

    def attach_quota(self, quota):
        """QuotaAccountant 연결 (finalize/remove 시 동기 갱신)"""
        self._quota = quota

    def detach_quota(self, quota=None):
        if quota is None or self._quota is quota:
            self._quota = None

    # ========== 내부 유틸리티 ==========

    @staticmethod
    def _key(handle: HandleLike) -> str:
        if isinstance(handle, (SegmentHandle, Segment)):
            return handle.filename
        return str(handle)

    def _row_to_segment(self, row) -> Segment:
        data = dict(row)
        return Segment(
            filename=data["filename"],
            camera_id=data["camera_id"],
            file_path=data["file_path"],
            start_time=_parse(data["start_time"]),
            end_time=_parse(data["end_time"]),
            duration_seconds=data["duration_seconds"] or 0.0,
            size=data["size"] or 0,
            status=SegmentStatus(data["status"]),
            protected=bool(data["protected"]),
            event_tags=set(self.db.deserialize_list(data["event_tags"])),
            metadata=SegmentMetadata(
                resolution=data["resolution"],
                codec=data["codec"],
                bitrate=data["bitrate"],
                fps=data["fps"],
            ),
            retention_deadline=_parse(data["retention_deadline"]),
            corrupted_reason=data["corrupted_reason"],
            created_at=_parse(data["created_at"]),
            updated_at=_parse(data["updated_at"]),
            deleted_at=_parse(data["deleted_at"]),
        )

    def _fetch(self, filename: str) -> Optional[Segment]:
        with self.db.lock:
            row = self.db.conn.execute(
                "SELECT * FROM segments WHERE filename = ?", (filename,)
            ).fetchone()
        return self._row_to_segment(row) if row else None

    def _transition_error(self, filename: str, target: SegmentStatus):
        """CAS 실패 원인에 맞는 예외 생성"""
        current = self._fetch(filename)
        if current is None:
            return SegmentNotFound(filename)
        if current.status == SegmentStatus.DELETED:
            return AlreadyDeleted(filename)
        return InvalidTransition(filename, current.status.value, target.value)

    def _cas_update(self, conn, filename: str, allowed: Sequence[SegmentStatus],
                    assignments: Dict[str, object], condition: str = "") -> int:
        """status 가 allowed 에 있을 때만 UPDATE, 변경된 행 수 반환 (condition: 추가 WHERE 절)"""
        assignments = dict(assignments)
        assignments["updated_at"] = self.clock().isoformat()
        columns = ", ".join(f"{col} = ?" for col in assignments)
        placeholders = ", ".join("?" for _ in allowed)
        extra = f" AND {condition}" if condition else ""
        cursor = conn.execute(
            f"UPDATE segments SET {columns} WHERE filename = ? AND status IN ({placeholders}){extra}",
            (*assignments.values(), filename, *[s.value for s in allowed])
        )
        return cursor.rowcount

    # ========== 생성 / 상태 전이 ==========

    def create_segment(self, camera_id: str, start_time: datetime,
                       filename: Optional[str] = None) -> SegmentHandle:
        """
        녹화 시작 시 세그먼트 레코드 생성 (status=recording)

        Args:
            camera_id: 카메라 ID
            start_time: 녹화 시작 시각
            filename: 지정하지 않으면 filename_factory 로 생성

        Raises:
            DuplicateFilename: 생성된 파일명이 이미 존재할 때 (호출자가 다시 생성해야 함)
        """
        start_time = ensure_aware(start_time)
        filename = filename or self.filename_factory(camera_id, start_time)
        file_path = self.recording_path / camera_id / start_time.strftime("%Y%m%d") / filename
        now = self.clock().isoformat()

        with self.db.transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM segments WHERE filename = ?", (filename,)
            ).fetchone()
            if exists:
                raise DuplicateFilename(filename)

            conn.execute(
                """
                INSERT INTO segments (
                    filename, camera_id, file_path, start_time, start_ts,
                    status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (filename, camera_id, str(file_path), start_time.isoformat(), start_time.timestamp(),
                 SegmentStatus.RECORDING.value, now, now)
            )

        logger.debug(f"Segment created: {filename} (camera={camera_id})")
        return SegmentHandle(filename, camera_id, str(file_path))

    def finalize_segment(self, handle: HandleLike, end_time: datetime, size: int,
                         metadata: Optional[SegmentMetadata] = None,
                         event_tags: Optional[Sequence[str]] = None) -> Segment:
        """
        녹화 완료 처리 (recording → completed)

        보존 기한 계산과 용량 장부 갱신이 모두 성공해야 반영된다.

        Raises:
            InvalidTransition: recording 상태가 아닐 때
            AlreadyDeleted / SegmentNotFound
            InvalidSegment: end_time <= start_time 또는 size < 0
            PolicyUnresolved: 보존 정책이 없을 때 (세그먼트는 recording 으로 유지)
        """
        filename = self._key(handle)
        segment = self._fetch(filename)
        if segment is None:
            raise SegmentNotFound(filename)
        if segment.status != SegmentStatus.RECORDING:
            raise self._transition_error(filename, SegmentStatus.COMPLETED)

        end_time = ensure_aware(end_time)
        if end_time <= segment.start_time:
            raise InvalidSegment(filename, f"end_time {end_time.isoformat()} is not after "
                                           f"start_time {segment.start_time.isoformat()}")
        if size is None or size < 0:
            raise InvalidSegment(filename, f"invalid segment size: {size}")

        if self.resolver is None:
            raise ConfigurationError("SegmentRegistry has no retention resolver configured")

        # 정책 해석을 먼저 수행 → 실패 시 레코드는 변경되지 않음
        deadline = self.resolver.resolve(segment.camera_id, segment.start_time)
        metadata = metadata or SegmentMetadata()
        tags = set(segment.event_tags) | set(event_tags or ())
        duration = (end_time - segment.start_time).total_seconds()

        with self.db.transaction() as conn:
            changed = self._cas_update(conn, filename, (SegmentStatus.RECORDING,), {
                "status": SegmentStatus.COMPLETED.value,
                "end_time": end_time.isoformat(),
                "end_ts": end_time.timestamp(),
                "duration_seconds": duration,
                "size": int(size),
                "resolution": metadata.resolution,
                "codec": metadata.codec,
                "bitrate": metadata.bitrate,
                "fps": metadata.fps,
                "event_tags": self.db.serialize_list(tags),
                "retention_deadline": deadline.isoformat(),
                "retention_deadline_ts": deadline.timestamp(),
            })
            if changed == 0:
                # 다른 스레드가 먼저 상태를 바꿈
                raise self._transition_error(filename, SegmentStatus.COMPLETED)

            if self._quota is not None:
                self._quota.on_segment_finalized(segment.camera_id, int(size))

        logger.debug(f"Segment finalized: {filename} ({size / (1024 ** 2):.2f} MB, "
                     f"deadline={deadline.isoformat()})")
        return self._fetch(filename)

    def mark_corrupted(self, handle: HandleLike, reason: str) -> Segment:
        """
        손상 표시 (recording/completed → corrupted)

        recording 에서 바로 손상된 세그먼트는 보존 기한이 없으므로
        시작 시각을 기한으로 지정해 정리 대상이 되도록 한다.
        """
        filename = self._key(handle)

        with self.db.transaction() as conn:
            segment = self._fetch(filename)
            if segment is None:
                raise SegmentNotFound(filename)

            changed = self._cas_update(
                conn, filename, (SegmentStatus.RECORDING, SegmentStatus.COMPLETED), {
                    "status": SegmentStatus.CORRUPTED.value,
                    "corrupted_reason": reason,
                }
            )
            if changed == 0:
                raise self._transition_error(filename, SegmentStatus.CORRUPTED)

            # 기존 기한(finalize 에서 계산된 값)은 덮어쓰지 않음
            conn.execute(
                "UPDATE segments SET retention_deadline = ?, retention_deadline_ts = ? "
                "WHERE filename = ? AND retention_deadline_ts IS NULL",
                (segment.start_time.isoformat(), segment.start_time.timestamp(), filename)
            )

        logger.warning(f"Segment marked corrupted: {filename} ({reason})")
        return self._fetch(filename)

    def set_protected(self, handle: HandleLike, protected: bool) -> Segment:
        """보호 플래그 설정 (삭제되지 않은 모든 상태, 멱등)"""
        filename = self._key(handle)
        with self.db.transaction() as conn:
            changed = self._cas_update(conn, filename, SegmentStatus.live(), {"protected": bool(protected)})
            if changed == 0:
                raise self._transition_error(filename, SegmentStatus.DELETED)

        logger.info(f"Segment {'protected' if protected else 'unprotected'}: {filename}")
        return self._fetch(filename)

    def add_event_tags(self, handle: HandleLike, tags: Sequence[str]) -> Segment:
        """이벤트 태그 추가 (예: motion)"""
        filename = self._key(handle)
        with self.db.transaction() as conn:
            segment = self._fetch(filename)
            if segment is None:
                raise SegmentNotFound(filename)
            merged = segment.event_tags | set(tags)
            changed = self._cas_update(conn, filename, SegmentStatus.live(),
                                       {"event_tags": self.db.serialize_list(merged)})
            if changed == 0:
                raise self._transition_error(filename, SegmentStatus.DELETED)
        return self._fetch(filename)

    def set_retention_deadline(self, handle: HandleLike, deadline: datetime) -> None:
        """보존 기한 갱신 (정책 재계산용, completed/corrupted 만)"""
        filename = self._key(handle)
        with self.db.transaction() as conn:
            changed = self._cas_update(conn, filename, SegmentStatus.cleanup_eligible(), {
                "retention_deadline": deadline.isoformat(),
                "retention_deadline_ts": deadline.timestamp(),
            })
            if changed == 0:
                raise self._transition_error(filename, SegmentStatus.COMPLETED)

    def remove_segment(self, handle: HandleLike, unprotected_only: bool = False) -> Optional[Segment]:
        """
        세그먼트 레코드 삭제 (tombstone) + 용량 장부 차감

        두 번째 호출이나 존재하지 않는 핸들은 오류 없이 None 반환 (재시작 멱등성).

        Args:
            handle: 세그먼트 핸들/파일명
            unprotected_only: True 이면 보호된 세그먼트는 삭제하지 않고 None 반환 (자동 정리용)

        Returns:
            삭제된 세그먼트 (파일 삭제는 호출자 책임) 또는 None

        Raises:
            InvalidTransition: 녹화 중(recording) 세그먼트
        """
        filename = self._key(handle)
        now = self.clock()

        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM segments WHERE filename = ?", (filename,)).fetchone()
            if row is None:
                return None
            segment = self._row_to_segment(row)
            if segment.status == SegmentStatus.DELETED:
                return None
            if segment.status == SegmentStatus.RECORDING:
                raise InvalidTransition(filename, segment.status.value, SegmentStatus.DELETED.value)
            if unprotected_only and segment.protected:
                return None

            changed = self._cas_update(conn, filename, SegmentStatus.cleanup_eligible(), {
                "status": SegmentStatus.DELETED.value,
                "deleted_at": now.isoformat(),
                "deleted_ts": now.timestamp(),
            }, condition="protected = 0" if unprotected_only else "")
            if changed == 0:
                return None

            if self._quota is not None:
                self._quota.on_segment_removed(segment.camera_id, segment.size)

        logger.debug(f"Segment removed from registry: {filename}")
        segment.status = SegmentStatus.DELETED
        segment.deleted_at = now
        return segment

    def record_delete_failure(self, handle: HandleLike) -> int:
        """파일 삭제 실패 횟수 증가, 누적 횟수 반환"""
        filename = self._key(handle)
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE segments SET delete_failures = delete_failures + 1 WHERE filename = ?",
                (filename,)
            )
            row = conn.execute(
                "SELECT delete_failures FROM segments WHERE filename = ?", (filename,)
            ).fetchone()
        return row[0] if row else 0

    # ========== 조회 ==========

    def get_segment(self, handle: HandleLike) -> Segment:
        filename = self._key(handle)
        segment = self._fetch(filename)
        if segment is None:
            raise SegmentNotFound(filename)
        return segment

    def query_by_camera(self, camera_id: str, start: Optional[datetime] = None,
                        end: Optional[datetime] = None, page_size: int = 500,
                        event_tag: Optional[str] = None,
                        include_deleted: bool = False) -> Iterator[Segment]:
        """
        카메라별 세그먼트 조회 (시작 시각 오름차순, 지연 페이지 조회)

        [start, end) 구간과 겹치는 세그먼트를 반환한다.
        """
        conditions = ["camera_id = ?"]
        params: List[object] = [camera_id]
        if not include_deleted:
            conditions.append("status != ?")
            params.append(SegmentStatus.DELETED.value)
        if end is not None:
            conditions.append("start_ts < ?")
            params.append(ensure_aware(end).timestamp())
        if start is not None:
            conditions.append("(end_ts IS NULL OR end_ts > ?)")
            params.append(ensure_aware(start).timestamp())

        last_ts, last_name = None, None
        while True:
            page_conditions = list(conditions)
            page_params = list(params)
            if last_ts is not None:
                page_conditions.append("(start_ts > ? OR (start_ts = ? AND filename > ?))")
                page_params.extend([last_ts, last_ts, last_name])

            with self.db.lock:
                rows = self.db.conn.execute(
                    f"SELECT * FROM segments WHERE {' AND '.join(page_conditions)} "
                    f"ORDER BY start_ts, filename LIMIT ?",
                    (*page_params, page_size)
                ).fetchall()

            if not rows:
                return

            for row in rows:
                segment = self._row_to_segment(row)
                if event_tag is None or event_tag in segment.event_tags:
                    yield segment

            last_ts, last_name = rows[-1]["start_ts"], rows[-1]["filename"]
            if len(rows) < page_size:
                return

    def list_deletion_candidates(self, now: datetime,
                                 over_quota_cameras: Optional[Sequence[str]] = None,
                                 global_over_quota: Optional[bool] = None) -> List[Segment]:
        """
        삭제 후보 조회 (시작 시각 오름차순)

        completed/corrupted, 보호되지 않음, 그리고
        보존 기한 경과 OR 카메라 용량 초과 OR 전체 용량 초과

        Args:
            now: 보존 기한 비교 기준 시각
            over_quota_cameras: 용량 초과 카메라 (None이면 연결된 용량 장부 기준)
            global_over_quota: 전체 용량 초과 여부 (None이면 연결된 용량 장부 기준)
        """
        # 장부 조회는 DB 락 밖에서 (QuotaAccountant 락 순서: DB 락 → 장부 락)
        if over_quota_cameras is None:
            over_quota_cameras = self._quota.over_quota_cameras() if self._quota is not None else ()
        if global_over_quota is None:
            global_over_quota = self._quota.is_global_over_quota() if self._quota is not None else False

        eligible = [s.value for s in SegmentStatus.cleanup_eligible()]
        reasons = ["(retention_deadline_ts IS NOT NULL AND retention_deadline_ts <= ?)"]
        params: List[object] = [*eligible, ensure_aware(now).timestamp()]

        if global_over_quota:
            reasons.append("1 = 1")
        elif over_quota_cameras:
            reasons.append(f"camera_id IN ({', '.join('?' for _ in over_quota_cameras)})")
            params.extend(over_quota_cameras)

        with self.db.lock:
            rows = self.db.conn.execute(
                f"""
                SELECT * FROM segments
                WHERE status IN (?, ?) AND protected = 0 AND ({' OR '.join(reasons)})
                ORDER BY start_ts, filename
                """,
                params
            ).fetchall()
        return [self._row_to_segment(row) for row in rows]

    def list_by_status(self, status: SegmentStatus, camera_id: Optional[str] = None) -> List[Segment]:
        sql = "SELECT * FROM segments WHERE status = ?"
        params: List[object] = [status.value]
        if camera_id is not None:
            sql += " AND camera_id = ?"
            params.append(camera_id)
        with self.db.lock:
            rows = self.db.conn.execute(sql + " ORDER BY start_ts, filename", params).fetchall()
        return [self._row_to_segment(row) for row in rows]

    def live_file_paths(self) -> set:
        """삭제되지 않은 세그먼트의 파일 경로 집합 (고아 파일 판별용)"""
        with self.db.lock:
            rows = self.db.conn.execute(
                "SELECT file_path FROM segments WHERE status != ?", (SegmentStatus.DELETED.value,)
            ).fetchall()
        return {str(Path(row[0])) for row in rows}

    def sum_sizes(self, camera_id: Optional[str] = None) -> int:
        """삭제되지 않은 세그먼트 크기 합계 (용량 재계산용)"""
        sql = "SELECT COALESCE(SUM(size), 0) FROM segments WHERE status != ?"
        params: List[object] = [SegmentStatus.DELETED.value]
        if camera_id is not None:
            sql += " AND camera_id = ?"
            params.append(camera_id)
        with self.db.lock:
            return int(self.db.conn.execute(sql, params).fetchone()[0])

    def sizes_by_camera(self) -> Dict[str, int]:
        with self.db.lock:
            rows = self.db.conn.execute(
                "SELECT camera_id, COALESCE(SUM(size), 0) FROM segments "
                "WHERE status != ? GROUP BY camera_id",
                (SegmentStatus.DELETED.value,)
            ).fetchall()
        return {row[0]: int(row[1]) for row in rows}

    def camera_ids(self) -> List[str]:
        """세그먼트가 있는 카메라 ID 목록 (삭제 제외)"""
        with self.db.lock:
            rows = self.db.conn.execute(
                "SELECT DISTINCT camera_id FROM segments WHERE status != ? ORDER BY camera_id",
                (SegmentStatus.DELETED.value,)
            ).fetchall()
        return [row[0] for row in rows]

    def count_by_status(self) -> Dict[str, Dict[str, int]]:
        with self.db.lock:
            rows = self.db.conn.execute(
                "SELECT status, COUNT(*), COALESCE(SUM(size), 0) FROM segments GROUP BY status"
            ).fetchall()
        return {row[0]: {"count": row[1], "size": int(row[2])} for row in rows}

    def count_expiring(self, start: datetime, end: Optional[datetime] = None) -> int:
        """보존 기한이 [start, end] 에 있는 미보호 세그먼트 수 (end=None 이면 start 이전 전체)"""
        sql = ("SELECT COUNT(*) FROM segments WHERE status IN (?, ?) AND protected = 0 "
               "AND retention_deadline_ts IS NOT NULL")
        params: List[object] = [s.value for s in SegmentStatus.cleanup_eligible()]
        if end is None:
            sql += " AND retention_deadline_ts <= ?"
            params.append(start.timestamp())
        else:
            sql += " AND retention_deadline_ts >= ? AND retention_deadline_ts <= ?"
            params.extend([start.timestamp(), end.timestamp()])
        with self.db.lock:
            return self.db.conn.execute(sql, params).fetchone()[0]

    def count_protected(self) -> int:
        with self.db.lock:
            return self.db.conn.execute(
                "SELECT COUNT(*) FROM segments WHERE protected = 1 AND status != ?",
                (SegmentStatus.DELETED.value,)
            ).fetchone()[0]

    def purge_deleted(self, older_than: datetime) -> int:
        """오래된 tombstone 레코드 영구 삭제"""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM segments WHERE status = ? AND deleted_ts IS NOT NULL AND deleted_ts <= ?",
                (SegmentStatus.DELETED.value, older_than.timestamp())
            )
            count = cursor.rowcount
        logger.info(f"Cleaned up {count} old deleted segment metadata entries")
        return count
