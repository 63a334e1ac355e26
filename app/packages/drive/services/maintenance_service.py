"""维护任务：对账对象存储与元数据，修复两者之间可能遗留的不一致。

- 孤儿对象清理：补偿删除失败或进程中途崩溃会留下没有节点引用的对象，超过宽限期后删除；
  宽限期用于避开正在上传、尚未写入元数据的对象；
- 配额重算：按现存文件节点重新汇总 ``storage_used``。
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.constants import STORAGE_KEY_ROOT
from app.packages.drive.core.logger import logger
from app.packages.drive.core.timezone import utcnow
from app.packages.drive.crud.fs_node import fs_node_crud
from app.packages.drive.crud.users import user_crud
from app.packages.drive.services.quota_ledger import quota_ledger
from app.packages.drive.services.storage_backends import BlobInfo, StorageBackend, get_storage_backend

_BATCH_SIZE = 500


class MaintenanceService:
    def __init__(self, backend: Optional[StorageBackend] = None) -> None:
        self._backend = backend

    @property
    def backend(self) -> StorageBackend:
        return self._backend or get_storage_backend()

    def sweep_orphan_blobs(self, db: Session, *, older_than: Optional[datetime] = None) -> int:
        """删除没有任何节点引用、且最后修改时间早于 ``older_than`` 的对象，返回删除数量。"""
        if older_than is None:
            older_than = utcnow() - timedelta(seconds=get_settings().orphan_grace_seconds)

        removed = 0
        batch: List[BlobInfo] = []
        for info in self.backend.list_keys(STORAGE_KEY_ROOT + "/"):
            batch.append(info)
            if len(batch) >= _BATCH_SIZE:
                removed += self._sweep_batch(db, batch, older_than)
                batch = []
        if batch:
            removed += self._sweep_batch(db, batch, older_than)
        if removed:
            logger.info("Orphan sweep removed %s blobs", removed)
        return removed

    def _sweep_batch(self, db: Session, batch: List[BlobInfo], older_than: datetime) -> int:
        referenced = fs_node_crud.referenced_keys(db, (b.key for b in batch))
        removed = 0
        for info in batch:
            if info.key in referenced:
                continue
            if info.last_modified is not None and info.last_modified >= older_than:
                continue
            try:
                self.backend.delete(info.key)
                removed += 1
                logger.warning("Deleted orphaned blob %s (%s bytes)", info.key, info.size)
            except Exception as exc:  # noqa: BLE001 - next sweep retries
                logger.error("Failed to delete orphaned blob %s: %s", info.key, exc, exc_info=exc)
        return removed

    def recalculate_quota(self, db: Session, user_id: int) -> int:
        """按现存文件节点（含回收站）重算已用空间，返回重算后的值。"""
        user = user_crud.get(db, user_id)
        if user is None:
            return 0
        actual = fs_node_crud.sum_file_sizes(db, user_id=user_id)
        if int(user.storage_used) != actual:
            logger.warning("Quota drift for user %s: ledger=%s actual=%s", user_id, user.storage_used, actual)
            quota_ledger.set_used(db, user_id=user_id, nbytes=actual)
            db.expire(user)
        return actual

    def run(self, db: Session) -> Dict[str, int]:
        orphans = self.sweep_orphan_blobs(db)
        corrected = 0
        for user_id in user_crud.list_ids(db):
            before = user_crud.get(db, user_id)
            previous = int(before.storage_used) if before is not None else 0
            if self.recalculate_quota(db, user_id) != previous:
                corrected += 1
        return {"orphans": orphans, "quota_corrected": corrected}


maintenance_service = MaintenanceService()
