"""
Configuration Manager
SQLite DB 기반 설정 관리 (보존 정책 / 용량 할당 / 로깅)
"""

from dataclasses import dataclass, asdict, field, fields
from typing import Dict, List, Any, Optional
from loguru import logger

from core.db_manager import DBManager
from core.exceptions import ConfigurationError


GB = 1024 ** 3


@dataclass
class StorageConfig:
    """전역 스토리지/보존 설정"""
    recording_path: str = "./recordings"
    retention_days: Optional[int] = 30  # None이면 전역 기본값 없음 → PolicyUnresolved
    storage_quota_bytes: Optional[int] = None  # 전체 용량 한도 (None이면 무제한)
    auto_cleanup_enabled: bool = True
    cleanup_interval_seconds: int = 3600
    cleanup_on_startup: bool = True
    run_lock_ttl_seconds: int = 1800
    recompute_grace_hours: int = 24  # 재계산으로 즉시 만료되는 세그먼트 유예 시간
    orphan_age_hours: int = 24  # 이보다 오래된 고아 파일만 삭제
    deleted_metadata_days: int = 90  # 삭제 레코드(tombstone) 보관 기간
    delete_failure_alert_threshold: int = 3
    timezone: Optional[str] = None  # 달력 기준 보존 계산용 IANA 타임존


@dataclass
class CameraConfigData:
    """
    Camera retention/quota configuration

    인식되는 필드만 속성으로 가지며, 그 외 키는 extra에 보존된다.
    레거시 키 storage_quota_gb 는 바이트 단위로 변환된다.
    """
    camera_id: str
    name: str = ""
    enabled: bool = True
    retention_days: Optional[int] = None  # None이면 전역 기본값 사용
    storage_quota_bytes: Optional[int] = None  # None이면 전역 풀만 적용
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CameraConfigData':
        """
        dict → CameraConfigData (레거시/미인식 키 처리 포함)

        Raises:
            ConfigurationError: camera_id 누락 또는 숫자 필드 형식 오류
        """
        data = dict(data)
        camera_id = data.pop("camera_id", None)
        if not camera_id:
            raise ConfigurationError(f"Camera entry without camera_id: {data}")

        extra = dict(data.pop("extra", None) or {})
        known = {f.name for f in fields(cls)} - {"camera_id", "extra"}

        legacy_quota_gb = data.pop("storage_quota_gb", None)
        if legacy_quota_gb is not None and data.get("storage_quota_bytes") is None:
            data["storage_quota_bytes"] = int(float(legacy_quota_gb) * GB)
            logger.debug(f"Camera {camera_id}: legacy storage_quota_gb={legacy_quota_gb} converted to bytes")

        values = {}
        for key, value in data.items():
            if key in known:
                values[key] = value
            else:
                extra[key] = value

        if extra:
            logger.debug(f"Camera {camera_id}: unrecognized settings kept as extra: {sorted(extra)}")

        try:
            for key in ("retention_days", "storage_quota_bytes"):
                if values.get(key) is not None:
                    values[key] = int(values[key])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid numeric setting for camera {camera_id}: {e}")

        return cls(camera_id=camera_id, extra=extra, **values)

    def to_dict(self) -> dict:
        return asdict(self)


class ConfigManager:
    """
    Singleton class for managing retention and camera configurations (DB-based)

    Usage:
        config_manager = ConfigManager.get_instance(db_path="IT_RNVR.db")
        days = config_manager.get_retention_days("cam_01")
    """
    _instance: Optional['ConfigManager'] = None
    _initialized: bool = False

    def __new__(cls, *_args, **_kwargs):
        """
        Create or return singleton instance
        """
        if cls._instance is None:
            cls._instance = super(ConfigManager, cls).__new__(cls)
        return cls._instance

    def __init__(self, db_path: str = "IT_RNVR.db"):
        """
        Initialize configuration manager (only once for singleton)

        Args:
            db_path: Path to database file (default: IT_RNVR.db)
        """
        # 이미 초기화되었으면 다시 초기화하지 않음
        if ConfigManager._initialized:
            return

        self.db_path = db_path
        self.db_manager = DBManager(db_path)

        self.storage_config = StorageConfig()
        self.cameras: List[CameraConfigData] = []
        self.logging_config: Dict[str, Any] = {}

        # DB에서 설정 로드
        self.load_config()

        # 초기화 완료 플래그 설정
        ConfigManager._initialized = True
        logger.info(f"ConfigManager singleton instance initialized (DB: {db_path})")

    @classmethod
    def get_instance(cls, db_path: str = "IT_RNVR.db") -> 'ConfigManager':
        """
        Get singleton instance of ConfigManager

        Args:
            db_path: Path to database file (only used on first call)
        """
        if cls._instance is None or not cls._initialized:
            cls._instance = ConfigManager(db_path=db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls):
        """
        Reset singleton instance (mainly for testing)
        """
        if cls._instance and hasattr(cls._instance, 'db_manager'):
            cls._instance.db_manager.close()
        cls._instance = None
        cls._initialized = False
        logger.debug("ConfigManager singleton instance reset")

    def load_config(self) -> bool:
        """
        DB에서 설정 로드

        Returns:
            True if loaded successfully
        """
        try:
            self.storage_config = StorageConfig(**self.db_manager.get_storage_config())
            self.cameras = [CameraConfigData.from_dict(cam) for cam in self.db_manager.get_cameras()]
            self.logging_config = self.db_manager.get_logging_config()

            logger.info("설정이 DB에서 로드되었습니다")
            logger.info(f"로드된 카메라: {len(self.cameras)}대, "
                        f"전역 보존 기간: {self.storage_config.retention_days}일")

            for cam in self.cameras:
                logger.debug(f"카메라 로드: {cam.camera_id} - retention={cam.retention_days} "
                             f"quota={cam.storage_quota_bytes}")
            return True

        except Exception as e:
            logger.error(f"DB 설정 로드 실패: {e}")
            return False

    def save_config(self) -> bool:
        """
        설정을 DB에 저장 (storage, cameras, logging 섹션)

        Returns:
            True if saved successfully
        """
        try:
            with self.db_manager.transaction():
                self.db_manager.save_storage_config(asdict(self.storage_config), commit=False)
                self.db_manager.save_cameras([cam.to_dict() for cam in self.cameras], commit=False)
                if self.logging_config:
                    self.db_manager.save_logging_config(self.logging_config, commit=False)

            logger.info("설정이 DB에 저장되었습니다")
            return True

        except Exception as e:
            logger.error(f"DB 설정 저장 실패: {e}")
            return False

    def import_yaml(self, yaml_path: str) -> bool:
        """
        YAML 설정 파일을 DB로 가져온 뒤 다시 로드

        Args:
            yaml_path: storage / cameras / logging 섹션을 가진 YAML 파일

        Returns:
            True if imported successfully
        """
        try:
            self.db_manager.migrate_from_yaml(
                yaml_path,
                normalize_camera=lambda cam: CameraConfigData.from_dict(cam).to_dict()
            )
        except Exception as e:
            logger.error(f"YAML 설정 가져오기 실패: {e}")
            return False
        return self.load_config()

    # ========== 카메라 설정 ==========

    def add_camera(self, camera: CameraConfigData) -> bool:
        """
        Add new camera configuration

        Returns:
            True if added successfully
        """
        if any(c.camera_id == camera.camera_id for c in self.cameras):
            logger.error(f"Camera with ID {camera.camera_id} already exists")
            return False

        self.cameras.append(camera)
        logger.info(f"Added camera: {camera.name} ({camera.camera_id})")
        return True

    def remove_camera(self, camera_id: str) -> bool:
        """
        Remove camera configuration
        """
        initial_count = len(self.cameras)
        self.cameras = [c for c in self.cameras if c.camera_id != camera_id]

        if len(self.cameras) < initial_count:
            logger.info(f"Removed camera: {camera_id}")
            return True
        else:
            logger.warning(f"Camera not found: {camera_id}")
            return False

    def update_camera(self, camera_id: str, **kwargs) -> bool:
        """
        Update camera configuration

        보존 기간 변경 후에는 기존 세그먼트의 기한이 자동으로 바뀌지 않는다.
        RetentionService.recompute_retention()을 명시적으로 호출해야 한다.
        """
        camera = self.get_camera(camera_id)
        if camera is None:
            logger.warning(f"Camera not found: {camera_id}")
            return False

        for key, value in kwargs.items():
            if hasattr(camera, key):
                setattr(camera, key, value)
            else:
                camera.extra[key] = value
        logger.info(f"Updated camera: {camera_id}")
        return True

    def get_camera(self, camera_id: str) -> Optional[CameraConfigData]:
        """
        Get camera configuration
        """
        for camera in self.cameras:
            if camera.camera_id == camera_id:
                return camera
        return None

    def get_all_cameras(self) -> List[CameraConfigData]:
        return self.cameras

    # ========== 보존 엔진이 사용하는 조회 인터페이스 ==========

    def get_retention_days(self, camera_id: str) -> Optional[int]:
        """카메라 보존 기간 override (없으면 None)"""
        camera = self.get_camera(camera_id)
        return camera.retention_days if camera else None

    def get_storage_quota_bytes(self, camera_id: str) -> Optional[int]:
        """카메라 용량 할당 (없으면 None)"""
        camera = self.get_camera(camera_id)
        return camera.storage_quota_bytes if camera else None

    @property
    def global_retention_days(self) -> Optional[int]:
        return self.storage_config.retention_days

    @property
    def global_quota_bytes(self) -> Optional[int]:
        return self.storage_config.storage_quota_bytes

    @property
    def cleanup_interval_seconds(self) -> int:
        return self.storage_config.cleanup_interval_seconds

    @property
    def timezone(self) -> Optional[str]:
        return self.storage_config.timezone

    def get_logging_config(self) -> Dict[str, Any]:
        return self.logging_config
