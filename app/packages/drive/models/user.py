"""用户模型：账号由外部认证服务维护，本服务只关心配额与回收站保留期。"""

from typing import Optional

from sqlalchemy import BigInteger, Boolean, CheckConstraint, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import expression

from app.packages.drive.core.constants import DEFAULT_STORAGE_LIMIT, DEFAULT_TRASH_RETENTION_DAYS
from app.packages.drive.models.base import Base, TimestampMixin


class User(TimestampMixin, Base):
    """用户实体，内嵌配额记录（``storage_used`` / ``storage_limit``）。

    ``storage_used`` 等于该用户所有现存文件节点（含回收站中的文件）的 ``size_bytes`` 之和，
    只通过 :mod:`quota_ledger` 的原子更新语句修改。
    """

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("storage_used >= 0", name="storage_used_non_negative"),
        CheckConstraint("trash_retention_days BETWEEN 1 AND 365", name="trash_retention_range"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    username: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=expression.true())

    storage_used: Mapped[int] = mapped_column(BigInteger, default=0, server_default="0", nullable=False)
    storage_limit: Mapped[int] = mapped_column(BigInteger, default=DEFAULT_STORAGE_LIMIT, nullable=False)
    trash_retention_days: Mapped[int] = mapped_column(
        Integer, default=DEFAULT_TRASH_RETENTION_DAYS, server_default=str(DEFAULT_TRASH_RETENTION_DAYS), nullable=False
    )
