"""
정리 패스 단일 실행 락

DB 테이블(run_lock) 한 행으로 표현되며 TTL 이 지나면 다른 소유자가 가져갈 수 있다.
프로세스가 비정상 종료해도 TTL 경과 후 자동 해제되고, 시작 시 reset() 으로 정리된다.
획득할 때마다 새 토큰이 발급되므로 같은 holder 를 쓰는 스레드끼리도 서로의 락을 풀지 않는다.
"""
import os
import socket
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from loguru import logger

from .db_manager import DBManager


class RunLock:
    """TTL 기반 배타 실행 락"""

    def __init__(self, db_manager: DBManager, name: str = "cleanup",
                 ttl_seconds: int = 1800, clock: Callable[[], datetime] = None,
                 holder: Optional[str] = None):
        self.db = db_manager
        self.name = name
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock or (lambda: datetime.now().astimezone())
        self.holder = holder or f"{socket.gethostname()}:{os.getpid()}"
        # 획득 토큰은 스레드별 (스케줄러 스레드와 수동 실행이 같은 인스턴스를 공유)
        self._local = threading.local()

    def acquire(self) -> bool:
        """
        락 획득 시도

        Returns:
            True if acquired (다른 소유자가 유효한 락을 가지고 있으면 False)
        """
        now = self.clock()
        token = uuid.uuid4().hex
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT holder, expires_ts FROM run_lock WHERE name = ?", (self.name,)
            ).fetchone()

            if row is not None and row["expires_ts"] > now.timestamp():
                logger.debug(f"Run lock '{self.name}' held by {row['holder']}")
                return False

            if row is not None:
                logger.warning(f"Run lock '{self.name}' expired (holder={row['holder']}), taking over")

            conn.execute(
                "INSERT OR REPLACE INTO run_lock (name, holder, token, acquired_at, expires_ts) "
                "VALUES (?, ?, ?, ?, ?)",
                (self.name, self.holder, token, now.isoformat(), (now + self.ttl).timestamp())
            )
        self.token = token
        return True

    def renew(self) -> bool:
        """
        TTL 연장 (긴 패스 도중 호출)

        Returns:
            False if 락을 잃음 (만료 후 다른 소유자가 가져갔거나 reset 됨)
        """
        if self.token is None:
            return False
        expires = self.clock() + self.ttl
        with self.db.transaction() as conn:
            changed = conn.execute(
                "UPDATE run_lock SET expires_ts = ? WHERE name = ? AND token = ?",
                (expires.timestamp(), self.name, self.token)
            ).rowcount
        if changed == 0:
            logger.warning(f"Run lock '{self.name}' lost (holder={self.holder})")
            self.token = None
            return False
        return True

    def release(self):
        """이번 획득으로 얻은 락만 해제"""
        if self.token is None:
            return
        with self.db.transaction() as conn:
            conn.execute(
                "DELETE FROM run_lock WHERE name = ? AND token = ?", (self.name, self.token)
            )
        self.token = None

    def reset(self) -> int:
        """소유자와 무관하게 락 삭제 (서비스 시작 시 이전 실행의 잔여 락 정리)"""
        with self.db.transaction() as conn:
            count = conn.execute("DELETE FROM run_lock WHERE name = ?", (self.name,)).rowcount
        if count:
            logger.info(f"Stale run lock '{self.name}' cleared")
        return count

    def is_held(self) -> bool:
        now = self.clock()
        with self.db.lock:
            row = self.db.conn.execute(
                "SELECT expires_ts FROM run_lock WHERE name = ?", (self.name,)
            ).fetchone()
        return row is not None and row[0] > now.timestamp()

    @property
    def token(self) -> Optional[str]:
        return getattr(self._local, "token", None)

    @token.setter
    def token(self, value: Optional[str]):
        self._local.token = value
