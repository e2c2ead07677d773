"""
정리 스케줄러

주기적으로 SegmentCleaner 의 정리 패스와 유지보수 작업을 실행하는 백그라운드 스레드.
정지 요청은 패스 사이에서만 확인하므로 진행 중인 패스는 항상 끝까지 실행된다.
"""
import threading
from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from .models import CleanupReport


class CleanupScheduler:
    """주기적 정리 실행기"""

    def __init__(self, cleaner, interval_seconds: int = 3600,
                 run_housekeeping: bool = True,
                 clock: Callable[[], datetime] = None):
        """
        Args:
            cleaner: SegmentCleaner
            interval_seconds: 패스 간격 (초)
            run_housekeeping: 패스 후 누락 파일/고아 파일/tombstone 정리 실행 여부
            clock: 마지막 실행 시각 기록용 시계
        """
        self.cleaner = cleaner
        self.interval_seconds = interval_seconds
        self.run_housekeeping = run_housekeeping
        self.clock = clock or (lambda: datetime.now().astimezone())

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_run: Optional[datetime] = None
        self.last_report: Optional[CleanupReport] = None

    def run_once(self) -> CleanupReport:
        """정리 패스 1회 + (실행된 경우) 유지보수"""
        report = self.cleaner.run_pass()
        if not (report.skipped or report.aborted) and self.run_housekeeping:
            self.cleaner.run_housekeeping()

        self.last_run = self.clock()
        self.last_report = report
        return report

    def start(self, run_immediately: bool = True):
        """
        백그라운드 스레드 시작

        Args:
            run_immediately: False 이면 첫 패스를 한 주기 뒤에 실행
        """
        if self.is_running:
            logger.warning("Cleanup scheduler already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_main_loop, args=(run_immediately,), name="cleanup-scheduler", daemon=True
        )
        self._thread.start()
        logger.info(f"Cleanup scheduler started (interval: {self.interval_seconds}s)")

    def stop(self, timeout: Optional[float] = None):
        """
        정지 요청 후 스레드 종료 대기

        진행 중인 패스는 중단하지 않는다.
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Cleanup scheduler did not stop within timeout (pass in progress)")
            else:
                self._thread = None
        logger.info("Cleanup scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_main_loop(self, run_immediately: bool = True):
        if not run_immediately:
            self._stop_event.wait(self.interval_seconds)

        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                # 한 번의 실패로 스케줄러가 멈추지 않도록 다음 주기에 재시도
                logger.exception(f"Cleanup pass failed: {e}")

            self._stop_event.wait(self.interval_seconds)
