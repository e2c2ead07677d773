"""
NVR Recording Module

녹화 파이프라인과 세그먼트 레지스트리 사이의 수집 어댑터
"""

from .recording_manager import RecordingManager, PendingCompletion

__all__ = [
    'RecordingManager',
    'PendingCompletion'
]
