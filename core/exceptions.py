"""
NVR 보존 엔진 커스텀 예외 클래스
"""


class NVRException(Exception):
    """NVR 시스템 기본 예외"""
    def __init__(self, message: str, error_code: str = None):
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class SegmentError(NVRException):
    """세그먼트 관련 오류"""
    def __init__(self, filename: str, message: str, error_code: str = "SEG_ERR"):
        super().__init__(message, error_code)
        self.filename = filename


class InvalidTransition(SegmentError):
    """허용되지 않는 상태 전이"""
    def __init__(self, filename: str, current: str, target: str, error_code: str = "SEG_INVALID_TRANSITION"):
        super().__init__(filename, f"Invalid transition for {filename}: {current} -> {target}", error_code)
        self.current = current
        self.target = target


class DuplicateFilename(SegmentError):
    """세그먼트 파일명 중복"""
    def __init__(self, filename: str, error_code: str = "SEG_DUPLICATE"):
        super().__init__(filename, f"Segment filename already exists: {filename}", error_code)


class AlreadyDeleted(SegmentError):
    """이미 삭제된 세그먼트에 대한 작업"""
    def __init__(self, filename: str, error_code: str = "SEG_DELETED"):
        super().__init__(filename, f"Segment already deleted: {filename}", error_code)


class SegmentNotFound(SegmentError):
    """등록되지 않은 세그먼트"""
    def __init__(self, filename: str, error_code: str = "SEG_NOT_FOUND"):
        super().__init__(filename, f"Segment not found: {filename}", error_code)


class InvalidSegment(SegmentError):
    """세그먼트 검증 실패 (시간/크기 불변식 위반)"""
    def __init__(self, filename: str, message: str, error_code: str = "SEG_INVALID"):
        super().__init__(filename, message, error_code)


class PolicyUnresolved(NVRException):
    """보존 정책을 결정할 수 없음 (설정 오류)"""
    def __init__(self, camera_id: str, error_code: str = "POLICY_UNRESOLVED"):
        super().__init__(
            f"No retention policy for camera {camera_id}: "
            f"no camera override and no global default configured",
            error_code
        )
        self.camera_id = camera_id


class QuotaLedgerDrift(NVRException):
    """용량 장부 불일치"""
    def __init__(self, camera_id: str, cached: int, actual: int, error_code: str = "QUOTA_DRIFT"):
        super().__init__(
            f"Quota ledger drift for camera {camera_id}: cached={cached} actual={actual}",
            error_code
        )
        self.camera_id = camera_id
        self.cached = cached
        self.actual = actual


class FileDeletionFailed(NVRException):
    """녹화 파일 삭제 실패"""
    def __init__(self, file_path: str, reason: str, error_code: str = "FILE_DELETE_ERR"):
        super().__init__(f"Failed to delete {file_path}: {reason}", error_code)
        self.file_path = file_path
        self.reason = reason


class StorageError(NVRException):
    """스토리지 관련 오류"""
    def __init__(self, message: str, error_code: str = "STORAGE_ERR"):
        super().__init__(message, error_code)


class ConfigurationError(NVRException):
    """설정 관련 오류"""
    def __init__(self, message: str, error_code: str = "CONFIG_ERR"):
        super().__init__(message, error_code)


class RunLockLost(NVRException):
    """정리 패스 도중 실행 락을 잃음 (TTL 만료 후 다른 소유자가 획득)"""
    def __init__(self, name: str, error_code: str = "RUN_LOCK_LOST"):
        super().__init__(f"Run lock '{name}' was lost during the cleanup pass", error_code)
        self.name = name
