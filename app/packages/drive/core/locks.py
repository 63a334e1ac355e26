"""分布式锁：保证同一时刻只有一个进程执行回收站清理等后台任务。

优先使用 Redis（``SET NX PX``），Redis 不可用时回退为进程内锁。
"""

from __future__ import annotations

import threading
import time
import uuid
from typing import Optional

import redis

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.logger import logger


class LockBackend:
    """锁后端基类：``acquire`` 成功返回持有者令牌，失败返回 ``None``。"""

    def acquire(self, name: str, ttl_seconds: int) -> Optional[str]:  # pragma: no cover - interface definition
        raise NotImplementedError

    def release(self, name: str, token: str) -> None:  # pragma: no cover
        raise NotImplementedError


class RedisLockBackend(LockBackend):
    # 只有持有者才能释放，避免误删其他进程在过期后重新获取的锁
    _RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    end
    return 0
    """

    def __init__(self, url: str) -> None:
        self._client = redis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=2)
        self._client.ping()

    def acquire(self, name: str, ttl_seconds: int) -> Optional[str]:
        token = uuid.uuid4().hex
        if self._client.set(self._build_key(name), token, nx=True, px=int(ttl_seconds * 1000)):
            return token
        return None

    def release(self, name: str, token: str) -> None:
        self._client.eval(self._RELEASE_SCRIPT, 1, self._build_key(name), token)

    @staticmethod
    def _build_key(name: str) -> str:
        return f"lock:{name}"


class InMemoryLockBackend(LockBackend):
    """内存后端用于测试或缺少 Redis 时的回退实现，只在单进程内互斥。"""

    def __init__(self) -> None:
        self._store: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def acquire(self, name: str, ttl_seconds: int) -> Optional[str]:
        now = time.monotonic()
        with self._lock:
            record = self._store.get(name)
            if record is not None and record[1] > now:
                return None
            token = uuid.uuid4().hex
            self._store[name] = (token, now + ttl_seconds)
            return token

    def release(self, name: str, token: str) -> None:
        with self._lock:
            record = self._store.get(name)
            if record is not None and record[0] == token:
                self._store.pop(name, None)


_backend: Optional[LockBackend] = None


def get_lock_backend() -> LockBackend:
    global _backend
    if _backend is not None:
        return _backend

    settings = get_settings()
    try:
        backend = RedisLockBackend(settings.redis_url)
        logger.info("Lock backend initialized with Redis at %s", settings.redis_url)
        _backend = backend
    except Exception as exc:  # pragma: no cover - fallback path
        logger.warning("Redis unavailable (%s), falling back to in-process locks", exc)
        _backend = InMemoryLockBackend()
    return _backend


def set_lock_backend(backend: Optional[LockBackend]) -> None:
    global _backend
    _backend = backend
