"""尽力而为的写入单元：把级联写入（回收站、恢复、子树删除）作为一个整体提交。

元数据库支持事务时（默认），单元内所有写入只 ``flush``，在退出时统一 ``commit``，
任一步失败整体回滚；``METADATA_TRANSACTIONS=false`` 时退化为每次写入立即提交，
中途失败会留下部分已提交的写入，此时记录告警日志，调用方的业务逻辑不因部署形态而改变。
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings

logger = logging.getLogger(__name__)


class UnitOfWork:
    def __init__(self, db: Session, *, transactional: bool, label: str) -> None:
        self.db = db
        self.transactional = transactional
        self.label = label
        self.writes = 0
        self._compensations: list[Callable[[], None]] = []

    def add(self, obj: Any) -> Any:
        self.db.add(obj)
        self._step()
        return obj

    def delete(self, obj: Any) -> None:
        self.db.delete(obj)
        self._step()

    def execute(self, statement: Any):
        result = self.db.execute(statement)
        self._step()
        return result

    def compensate(self, action: Callable[[], None]) -> None:
        """登记逐条提交模式下失败时需要执行的补偿写入（事务模式下回滚即可，不执行）。"""
        if not self.transactional:
            self._compensations.append(action)

    def run_compensations(self) -> None:
        for action in reversed(self._compensations):
            try:
                action()
                self.db.commit()
            except Exception as exc:  # noqa: BLE001 - keep undoing the rest
                self.db.rollback()
                logger.error("Compensation in %s failed: %s", self.label, exc, exc_info=exc)
        self._compensations.clear()

    def _step(self) -> None:
        self.writes += 1
        if self.transactional:
            self.db.flush()
        else:
            self.db.commit()


@contextmanager
def unit_of_work(db: Session, *, label: str, transactional: Optional[bool] = None) -> Iterator[UnitOfWork]:
    """开启一个写入单元；正常退出时提交，异常时回滚并原样抛出。"""
    if transactional is None:
        transactional = get_settings().metadata_transactions
    uow = UnitOfWork(db, transactional=transactional, label=label)
    try:
        yield uow
        db.commit()
    except Exception:
        db.rollback()
        if not uow.transactional and uow.writes:
            logger.warning(
                "Partial %s: %s writes were committed before the failure (no multi-document transaction)",
                label,
                uow.writes,
            )
            uow.run_compensations()
        raise
