"""
NVR Core Services

보존/용량 관리 비즈니스 로직을 담당하는 서비스 계층
"""

from .retention_service import RetentionService

__all__ = [
    'RetentionService'
]
