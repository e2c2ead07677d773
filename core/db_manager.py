"""
Database Manager
SQLite 데이터베이스 기반 설정 및 세그먼트 저장소 관리
"""

import sqlite3
import threading
import json
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, List, Any, Optional

import yaml
from loguru import logger


DEFAULT_STORAGE_CONFIG: Dict[str, Any] = {
    "recording_path": "./recordings",
    "retention_days": 30,
    "storage_quota_bytes": None,
    "auto_cleanup_enabled": True,
    "cleanup_interval_seconds": 3600,
    "cleanup_on_startup": True,
    "run_lock_ttl_seconds": 1800,
    "recompute_grace_hours": 24,
    "orphan_age_hours": 24,
    "deleted_metadata_days": 90,
    "delete_failure_alert_threshold": 3,
    "timezone": None,
}

_STORAGE_BOOL_KEYS = ("auto_cleanup_enabled", "cleanup_on_startup")


class DBManager:
    """
    SQLite 데이터베이스 관리 클래스
    설정 정보와 세그먼트 레코드를 하나의 데이터베이스 파일에 저장
    """

    def __init__(self, db_path: str = "IT_RNVR.db"):
        """
        DBManager 초기화

        Args:
            db_path: 데이터베이스 파일 경로 (":memory:" 가능)
        """
        self.db_path = db_path
        self.lock = threading.RLock()  # 멀티스레드 안전성을 위한 RLock (재진입 가능)

        # 데이터베이스 연결 (타임아웃 30초로 설정)
        self.conn = sqlite3.connect(db_path, timeout=30.0, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row  # 딕셔너리 형태로 결과 반환

        # WAL 모드 활성화 (읽기/쓰기 동시 처리 가능)
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")  # WAL 모드에서 성능 최적화
        logger.debug("WAL mode enabled for database")

        # 스키마 초기화
        self._init_schema()

        logger.info(f"DBManager initialized: {db_path}")

    def _init_schema(self):
        """데이터베이스 스키마 초기화"""
        schema_file = Path(__file__).parent / "db_schema.sql"

        if not schema_file.exists():
            logger.warning(f"Schema file not found: {schema_file}")
            return

        try:
            with open(schema_file, 'r', encoding='utf-8') as f:
                schema_sql = f.read()

            with self.lock:
                self.conn.executescript(schema_sql)
                self.conn.commit()

            logger.debug("Database schema initialized")
        except Exception as e:
            logger.error(f"Failed to initialize schema: {e}")
            raise

    def close(self):
        """데이터베이스 연결 종료"""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Database connection closed")

    def commit(self):
        """트랜잭션 커밋"""
        with self.lock:
            self.conn.commit()

    def rollback(self):
        """트랜잭션 롤백"""
        with self.lock:
            self.conn.rollback()

    @contextmanager
    def transaction(self):
        """
        락을 잡은 상태로 하나의 트랜잭션 실행

        블록이 정상 종료되면 커밋, 예외 발생 시 롤백 후 예외 전파

        Yields:
            sqlite3.Connection
        """
        with self.lock:
            try:
                yield self.conn
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    def get_record_count(self, table_name: str) -> int:
        """
        테이블의 레코드 개수 반환

        Args:
            table_name: 테이블 이름

        Returns:
            레코드 개수
        """
        try:
            with self.lock:
                cursor = self.conn.execute(f"SELECT COUNT(*) FROM {table_name}")
                return cursor.fetchone()[0]
        except Exception as e:
            logger.error(f"Failed to get record count from {table_name}: {e}")
            return 0

    # ========== 데이터 타입 변환 유틸리티 ==========

    @staticmethod
    def serialize_list(data) -> str:
        """
        리스트(또는 집합)를 CSV 문자열로 변환

        Returns:
            CSV 문자열 (예: "motion,person")
        """
        if not data:
            return ""
        return ",".join(str(item) for item in sorted(data))

    @staticmethod
    def deserialize_list(data: Optional[str], dtype=str) -> list:
        """
        CSV 문자열을 리스트로 변환

        Args:
            data: CSV 문자열
            dtype: 요소 데이터 타입 (str, int, float)
        """
        if not data:
            return []

        items = data.split(",")

        if dtype == int:
            return [int(item.strip()) for item in items]
        elif dtype == float:
            return [float(item.strip()) for item in items]
        else:
            return [item.strip() for item in items if item.strip()]

    def _flatten_logging_config(self, logging_config: dict) -> dict:
        """
        logging nested dict → flat dict 변환

        Args:
            logging_config: {"enabled": True, "console": {...}, "file": {...}, ...}
        """
        flat = {
            "enabled": logging_config.get("enabled", True),
            "log_path": logging_config.get("log_path", "./logs"),
        }

        # console
        console = logging_config.get("console", {})
        flat["console_enabled"] = console.get("enabled", True)
        flat["console_level"] = console.get("level", "INFO")
        flat["console_colorize"] = console.get("colorize", True)
        flat["console_format"] = console.get("format", "")

        # file
        file_config = logging_config.get("file", {})
        flat["file_enabled"] = file_config.get("enabled", True)
        flat["file_level"] = file_config.get("level", "DEBUG")
        flat["file_filename"] = file_config.get("filename", "retention_{time:YYYY-MM-DD}.log")
        flat["file_format"] = file_config.get("format", "")
        flat["file_rotation"] = file_config.get("rotation", "1 day")
        flat["file_retention"] = file_config.get("retention", "7 days")
        flat["file_compression"] = file_config.get("compression", "zip")

        # error_log
        error_log = logging_config.get("error_log", {})
        flat["error_log_enabled"] = error_log.get("enabled", True)
        flat["error_log_filename"] = error_log.get("filename", "retention_errors_{time:YYYY-MM-DD}.log")
        flat["error_log_level"] = error_log.get("level", "ERROR")
        flat["error_log_rotation"] = error_log.get("rotation", "10 MB")
        flat["error_log_retention"] = error_log.get("retention", "30 days")

        # json_log
        json_log = logging_config.get("json_log", {})
        flat["json_log_enabled"] = json_log.get("enabled", False)
        flat["json_log_filename"] = json_log.get("filename", "retention_{time:YYYY-MM-DD}.json")
        flat["json_log_serialize"] = json_log.get("serialize", True)

        return flat

    def _unflatten_logging_config(self, data: dict) -> dict:
        """
        flat dict → logging nested dict 변환
        """
        return {
            "enabled": bool(data.get("enabled", True)),
            "log_path": data.get("log_path", "./logs"),
            "console": {
                "enabled": bool(data.get("console_enabled", True)),
                "level": data.get("console_level", "INFO"),
                "colorize": bool(data.get("console_colorize", True)),
                "format": data.get("console_format", ""),
            },
            "file": {
                "enabled": bool(data.get("file_enabled", True)),
                "level": data.get("file_level", "DEBUG"),
                "filename": data.get("file_filename", "retention_{time:YYYY-MM-DD}.log"),
                "format": data.get("file_format", ""),
                "rotation": data.get("file_rotation", "1 day"),
                "retention": data.get("file_retention", "7 days"),
                "compression": data.get("file_compression", "zip"),
            },
            "error_log": {
                "enabled": bool(data.get("error_log_enabled", True)),
                "filename": data.get("error_log_filename", "retention_errors_{time:YYYY-MM-DD}.log"),
                "level": data.get("error_log_level", "ERROR"),
                "rotation": data.get("error_log_rotation", "10 MB"),
                "retention": data.get("error_log_retention", "30 days"),
            },
            "json_log": {
                "enabled": bool(data.get("json_log_enabled", False)),
                "filename": data.get("json_log_filename", "retention_{time:YYYY-MM-DD}.json"),
                "serialize": bool(data.get("json_log_serialize", True)),
            }
        }

    # ========== DB 읽기 메서드 ==========

    def get_storage_config(self) -> dict:
        """
        storage 테이블 → dict

        Returns:
            {"recording_path": "./recordings", "retention_days": 30, ...}
        """
        try:
            with self.lock:
                cursor = self.conn.execute("SELECT * FROM storage LIMIT 1")
                row = cursor.fetchone()

                if row:
                    data = dict(row)
                    config = {key: data.get(key, default) for key, default in DEFAULT_STORAGE_CONFIG.items()}
                    for key in _STORAGE_BOOL_KEYS:
                        config[key] = bool(config[key])
                    return config
                else:
                    return dict(DEFAULT_STORAGE_CONFIG)
        except Exception as e:
            logger.error(f"Failed to get storage config: {e}")
            return dict(DEFAULT_STORAGE_CONFIG)

    def get_cameras(self) -> List[dict]:
        """
        cameras 테이블 → list of dict (display_order 순)
        """
        try:
            with self.lock:
                cursor = self.conn.execute("SELECT * FROM cameras ORDER BY display_order, camera_idx")
                cameras = []

                for row in cursor.fetchall():
                    data = dict(row)
                    camera = {
                        "camera_id": data["camera_id"],
                        "name": data["name"],
                        "enabled": bool(data["enabled"]),
                        "retention_days": data["retention_days"],
                        "storage_quota_bytes": data["storage_quota_bytes"],
                    }
                    # 인식되지 않은 키는 extra(JSON)에 보존
                    try:
                        camera.update(json.loads(data["extra"] or "{}"))
                    except json.JSONDecodeError:
                        logger.warning(f"Invalid extra settings for camera {data['camera_id']}, ignoring")
                    cameras.append(camera)

                return cameras
        except Exception as e:
            logger.error(f"Failed to get cameras: {e}")
            return []

    def get_logging_config(self) -> dict:
        """
        logging 테이블 → nested dict
        """
        try:
            with self.lock:
                cursor = self.conn.execute("SELECT * FROM logging LIMIT 1")
                row = cursor.fetchone()
                return self._unflatten_logging_config(dict(row) if row else {})
        except Exception as e:
            logger.error(f"Failed to get logging config: {e}")
            return self._unflatten_logging_config({})

    # ========== DB 쓰기 메서드 ==========

    def save_storage_config(self, data: dict, commit: bool = True):
        """dict → storage 테이블 UPDATE/INSERT"""
        values = {key: data.get(key, default) for key, default in DEFAULT_STORAGE_CONFIG.items()}
        columns = list(values.keys())

        try:
            with self.lock:
                count = self.get_record_count("storage")

                if count > 0:
                    assignments = ", ".join(f"{col} = ?" for col in columns)
                    self.conn.execute(
                        f"UPDATE storage SET {assignments} "
                        f"WHERE storage_idx = (SELECT MIN(storage_idx) FROM storage)",
                        tuple(values[col] for col in columns)
                    )
                else:
                    placeholders = ", ".join("?" for _ in columns)
                    self.conn.execute(
                        f"INSERT INTO storage ({', '.join(columns)}) VALUES ({placeholders})",
                        tuple(values[col] for col in columns)
                    )

                if commit:
                    self.conn.commit()
                logger.debug("storage config saved")
        except Exception as e:
            logger.error(f"Failed to save storage config: {e}")
            raise

    def save_cameras(self, cameras: List[dict], commit: bool = True):
        """
        list of dict → cameras 테이블 (전체 교체)

        Args:
            cameras: 카메라 설정 dict 리스트 (CameraConfigData.to_dict() 형태)
        """
        try:
            with self.lock:
                self.conn.execute("DELETE FROM cameras")

                for order, cam in enumerate(cameras):
                    self.conn.execute(
                        """
                        INSERT INTO cameras (
                            camera_id, name, enabled, retention_days,
                            storage_quota_bytes, extra, display_order
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            cam["camera_id"],
                            cam.get("name", ""),
                            cam.get("enabled", True),
                            cam.get("retention_days"),
                            cam.get("storage_quota_bytes"),
                            json.dumps(cam.get("extra") or {}),
                            order,
                        )
                    )

                if commit:
                    self.conn.commit()
                logger.debug(f"cameras saved: {len(cameras)} cameras")
        except Exception as e:
            logger.error(f"Failed to save cameras: {e}")
            raise

    def save_logging_config(self, data: dict, commit: bool = True):
        """nested dict → logging 테이블 UPDATE/INSERT"""
        flat = self._flatten_logging_config(data)
        columns = list(flat.keys())

        try:
            with self.lock:
                count = self.get_record_count("logging")

                if count > 0:
                    assignments = ", ".join(f"{col} = ?" for col in columns)
                    self.conn.execute(
                        f"UPDATE logging SET {assignments} "
                        f"WHERE logging_idx = (SELECT MIN(logging_idx) FROM logging)",
                        tuple(flat[col] for col in columns)
                    )
                else:
                    placeholders = ", ".join("?" for _ in columns)
                    self.conn.execute(
                        f"INSERT INTO logging ({', '.join(columns)}) VALUES ({placeholders})",
                        tuple(flat[col] for col in columns)
                    )

                if commit:
                    self.conn.commit()
                logger.debug("logging config saved")
        except Exception as e:
            logger.error(f"Failed to save logging config: {e}")
            raise

    def migrate_from_yaml(self, yaml_path: str, normalize_camera: Optional[Callable[[dict], dict]] = None) -> dict:
        """
        YAML 설정 파일에서 DB로 데이터 마이그레이션

        Args:
            yaml_path: YAML 설정 파일 경로
            normalize_camera: 카메라 항목 정규화 함수 (None이면 그대로 저장)

        Returns:
            로드된 YAML 데이터
        """
        logger.info(f"Starting YAML to DB migration: {yaml_path}")

        with open(yaml_path, 'r', encoding='utf-8') as f:
            yaml_data = yaml.safe_load(f) or {}

        with self.lock:
            try:
                if "storage" in yaml_data:
                    merged = self.get_storage_config()
                    merged.update(yaml_data["storage"] or {})
                    self.save_storage_config(merged, commit=False)
                    logger.debug("storage migrated")

                camera_list = yaml_data.get("cameras")
                if camera_list is not None:
                    if normalize_camera:
                        camera_list = [normalize_camera(cam) for cam in camera_list]
                    self.save_cameras(camera_list, commit=False)
                    logger.debug(f"cameras migrated: {len(camera_list)} cameras")

                if "logging" in yaml_data:
                    self.save_logging_config(yaml_data["logging"] or {}, commit=False)
                    logger.debug("logging migrated")

                self.conn.commit()
                logger.info("YAML to DB migration completed successfully")

            except Exception as e:
                self.conn.rollback()
                logger.error(f"Migration failed, rolled back: {e}")
                raise

        return yaml_data
