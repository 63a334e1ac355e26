"""回收站清理：按用户的保留天数永久删除过期的回收站节点。

``sweep`` 是一次完整的同步清理，可被脚本或测试直接调用；``TrashReaperScheduler`` 在应用启动时
作为后台任务周期运行，通过分布式锁保证多进程部署下同一时刻只有一个实例在清理。
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.constants import REAPER_LOCK_NAME
from app.packages.drive.core.locks import LockBackend, get_lock_backend
from app.packages.drive.core.logger import logger
from app.packages.drive.core.timezone import utcnow
from app.packages.drive.crud.fs_node import fs_node_crud
from app.packages.drive.crud.users import user_crud
from app.packages.drive.services import event_bus as events
from app.packages.drive.services.event_bus import event_bus
from app.packages.drive.services.file_service import FileService, file_service
from app.packages.drive.services.maintenance_service import maintenance_service


def sweep(db: Session, now: Optional[datetime] = None, *, files: FileService = file_service) -> int:
    """清理所有用户的过期回收站节点，返回永久删除的节点总数。

    单个用户失败只记录日志，不影响其他用户。候选节点在删除前会重新确认仍然存在：
    同一轮中先处理的祖先文件夹可能已连带删除了它。
    """
    now = now or utcnow()
    total = 0
    for user_id in user_crud.list_ids(db):
        try:
            user = user_crud.get(db, user_id)
            if user is None:
                continue
            cutoff = now - timedelta(days=int(user.trash_retention_days))
            candidates = fs_node_crud.list_trashed(db, user_id=user_id, before=cutoff)
            if not candidates:
                continue
            removed = files.purge_many(db, user_id=user_id, nodes=candidates)
            total += removed
            logger.info("Trash reaper removed %s nodes for user %s (cutoff %s)", removed, user_id, cutoff.isoformat())
        except Exception as exc:  # noqa: BLE001 - one user must not stop the sweep
            db.rollback()
            logger.error("Trash reaper failed for user %s: %s", user_id, exc, exc_info=exc)
    event_bus.emit(events.TRASH_SWEPT, count=total)
    return total


class TrashReaperScheduler:
    """后台周期任务：在工作线程中执行清理，避免阻塞事件循环。"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        interval_seconds: Optional[int] = None,
        lock_backend: Optional[LockBackend] = None,
        run_maintenance: Optional[bool] = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._interval = interval_seconds or settings.trash_reaper_interval_seconds
        self._lock_backend = lock_backend
        self._run_maintenance = settings.orphan_sweep_enabled if run_maintenance is None else run_maintenance
        self._background_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if not self._running:
            self._running = True
            self._background_task = asyncio.create_task(self._scheduler_loop())
            logger.info("Trash reaper scheduled every %s seconds", self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._background_task:
            self._background_task.cancel()
            try:
                await self._background_task
            except asyncio.CancelledError:
                pass
            self._background_task = None

    async def _scheduler_loop(self) -> None:
        while self._running:
            try:
                await asyncio.to_thread(self.run_once)
            except asyncio.CancelledError:
                break
            except Exception as exc:  # noqa: BLE001 - keep the schedule alive
                logger.error("Trash reaper run failed: %s", exc, exc_info=exc)
            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break

    def run_once(self) -> Optional[int]:
        """获取锁后执行一轮清理；锁被其他实例持有时跳过并返回 ``None``。"""
        locks = self._lock_backend or get_lock_backend()
        token = locks.acquire(REAPER_LOCK_NAME, ttl_seconds=max(self._interval, 60))
        if token is None:
            logger.info("Trash reaper skipped: another instance holds the lock")
            return None
        db = self._session_factory()
        try:
            removed = sweep(db)
            if self._run_maintenance:
                maintenance_service.run(db)
            return removed
        finally:
            db.close()
            locks.release(REAPER_LOCK_NAME, token)
