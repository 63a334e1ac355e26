"""统一的文件系统节点模型（文件与文件夹合并）。

存储规则：
- 层级通过 ``parent_id`` 表达，NULL 表示用户根目录；不存储完整路径，移动/重命名只改元数据；
- ``storage_key`` 为不透明的对象 key（``users/<user_id>/<随机标识>``），仅文件有值，创建后不再修改；
- 同一用户、同一父目录下未进入回收站的节点名称唯一；
- ``is_trash`` 为 True 时 ``trashed_at`` 与 ``trash_root_id`` 必须有值，``trash_root_id``
  指向本次放入回收站操作的顶层节点，恢复时据此找回同一批级联节点。
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import expression

from app.packages.drive.core.constants import NODE_TYPE_FILE, NODE_TYPE_FOLDER
from app.packages.drive.models.base import Base, TimestampMixin


class FsNode(TimestampMixin, Base):
    __tablename__ = "fs_nodes"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), index=True)
    parent_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("fs_nodes.id"), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    node_type: Mapped[str] = mapped_column(String(16))
    storage_key: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    mime_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    is_starred: Mapped[bool] = mapped_column(Boolean, default=False, server_default=expression.false())
    is_trash: Mapped[bool] = mapped_column(Boolean, default=False, server_default=expression.false())
    trashed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    trash_root_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)

    __table_args__ = (
        Index("ix_fs_nodes_user_parent_trash", "user_id", "parent_id", "is_trash"),
        Index("ix_fs_nodes_user_type", "user_id", "node_type"),
        Index("ix_fs_nodes_user_starred", "user_id", "is_starred"),
        Index("ix_fs_nodes_user_trash", "user_id", "is_trash"),
        # 根目录（parent_id 为 NULL）的重名由业务层校验兜底
        Index(
            "uq_fs_nodes_live_sibling",
            "user_id",
            "parent_id",
            "name",
            unique=True,
            postgresql_where=text("is_trash = false"),
            sqlite_where=text("is_trash = 0"),
        ),
    )

    @property
    def is_folder(self) -> bool:
        return self.node_type == NODE_TYPE_FOLDER

    @property
    def is_file(self) -> bool:
        return self.node_type == NODE_TYPE_FILE

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<FsNode id={self.id} user={self.user_id} type={self.node_type} name={self.name!r}>"
