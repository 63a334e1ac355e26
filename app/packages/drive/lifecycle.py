"""应用生命周期钩子：启动/停止后台清理任务，并提供就绪探针。"""

from __future__ import annotations

from typing import Dict, Optional

from sqlalchemy import text

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.logger import logger
from app.packages.drive.db import session as db_session
from app.packages.drive.services.event_bus import event_bus
from app.packages.drive.services.storage_backends import get_storage_backend
from app.packages.drive.services.trash_reaper import TrashReaperScheduler

_scheduler: Optional[TrashReaperScheduler] = None


async def on_startup() -> None:
    global _scheduler
    settings = get_settings()
    if not settings.trash_reaper_enabled:
        logger.info("Trash reaper disabled by configuration")
        return
    _scheduler = TrashReaperScheduler(db_session.SessionLocal)
    await _scheduler.start()


async def on_shutdown() -> None:
    global _scheduler
    if _scheduler is not None:
        await _scheduler.stop()
        _scheduler = None
    event_bus.shutdown(wait=True)


def ready_check() -> Dict[str, bool]:
    """逐项检查元数据库与对象存储是否可用，任何一项失败都不抛出异常。"""
    checks: Dict[str, bool] = {}
    try:
        with db_session.SessionLocal() as db:
            db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as exc:  # noqa: BLE001 - probe reports, never raises
        logger.warning("Readiness probe: database unavailable: %s", exc)
        checks["database"] = False
    try:
        get_storage_backend().health_check()
        checks["storage"] = True
    except Exception as exc:  # noqa: BLE001 - probe reports, never raises
        logger.warning("Readiness probe: storage unavailable: %s", exc)
        checks["storage"] = False
    return checks
