"""配额账本：维护 ``users.storage_used``，所有增减都是单条原子 UPDATE。

采用严格策略：预检查只用于提前拒绝，真正的扣减是带条件的自增
``storage_used + n <= storage_limit``，并发上传不会让已用空间越过上限。
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from app.packages.drive.core.exceptions import QuotaExceededError
from app.packages.drive.db.unit_of_work import UnitOfWork
from app.packages.drive.models.user import User


class QuotaLedger:
    def remaining(self, user: User) -> int:
        return max(int(user.storage_limit) - int(user.storage_used), 0)

    def usage(self, user: User) -> Dict[str, Any]:
        used = int(user.storage_used or 0)
        limit = int(user.storage_limit or 0)
        percent = round(used * 100 / limit) if limit > 0 else 0
        return {"used": used, "limit": limit, "percent": percent}

    def reserve(self, user: User, nbytes: Optional[int]) -> None:
        """上传前的预检查；声明大小缺失时跳过，由写入时的字节上限兜底。"""
        if nbytes is None or nbytes <= 0:
            return
        if int(user.storage_used) + int(nbytes) > int(user.storage_limit):
            raise QuotaExceededError(data=self.usage(user))

    def commit(self, uow: UnitOfWork, *, user_id: int, nbytes: int) -> None:
        if nbytes <= 0:
            return
        stmt = (
            update(User)
            .where(User.id == user_id)
            .where(User.storage_used + nbytes <= User.storage_limit)
            .values(storage_used=User.storage_used + nbytes)
            .execution_options(synchronize_session=False)
        )
        result = uow.execute(stmt)
        if result.rowcount != 1:
            raise QuotaExceededError()
        uow.compensate(lambda: self._decrement(uow.db, user_id=user_id, nbytes=nbytes))

    def release(self, uow: UnitOfWork, *, user_id: int, nbytes: int) -> None:
        if nbytes <= 0:
            return
        uow.execute(self._release_stmt(user_id, nbytes))

    def set_used(self, db: Session, *, user_id: int, nbytes: int) -> None:
        db.execute(
            update(User)
            .where(User.id == user_id)
            .values(storage_used=max(int(nbytes), 0))
            .execution_options(synchronize_session=False)
        )
        db.commit()

    def _decrement(self, db: Session, *, user_id: int, nbytes: int) -> None:
        db.execute(self._release_stmt(user_id, nbytes))

    @staticmethod
    def _release_stmt(user_id: int, nbytes: int):
        # 下限为 0，重复释放不会出现负数
        return (
            update(User)
            .where(User.id == user_id)
            .values(
                storage_used=case(
                    (User.storage_used - nbytes < 0, 0),
                    else_=User.storage_used - nbytes,
                )
            )
            .execution_options(synchronize_session=False)
        )


quota_ledger = QuotaLedger()
