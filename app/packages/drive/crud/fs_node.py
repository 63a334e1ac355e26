"""FsNode CRUD：所有查询都显式限定 ``user_id``，避免跨租户读写。"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from app.packages.drive.core.constants import NODE_TYPE_FILE, NODE_TYPE_FOLDER
from app.packages.drive.crud.base import CRUDBase
from app.packages.drive.models.fs_node import FsNode


def _escape_like(raw: str) -> str:
    return raw.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class CRUDFsNode(CRUDBase[FsNode]):
    def get_owned(self, db: Session, *, user_id: int, node_id: int) -> Optional[FsNode]:
        return (
            self.query(db)
            .filter(FsNode.id == node_id)
            .filter(FsNode.user_id == user_id)
            .first()
        )

    def exists(self, db: Session, *, node_id: int) -> bool:
        return db.query(FsNode.id).filter(FsNode.id == node_id).first() is not None

    def get_by_storage_key(self, db: Session, storage_key: str) -> Optional[FsNode]:
        return self.query(db).filter(FsNode.storage_key == storage_key).first()

    def get_live_sibling(
        self,
        db: Session,
        *,
        user_id: int,
        parent_id: Optional[int],
        name: str,
        exclude_id: Optional[int] = None,
    ) -> Optional[FsNode]:
        q = (
            self.query(db)
            .filter(FsNode.user_id == user_id)
            .filter(FsNode.parent_id.is_(None) if parent_id is None else FsNode.parent_id == parent_id)
            .filter(FsNode.name == name)
            .filter(FsNode.is_trash.is_(False))
        )
        if exclude_id is not None:
            q = q.filter(FsNode.id != exclude_id)
        return q.first()

    def list_children_of(self, db: Session, *, user_id: int, parent_ids: Sequence[int]) -> list[FsNode]:
        """按父节点批量取直接子节点（不区分回收站状态），用于逐层展开子树。"""
        if not parent_ids:
            return []
        return (
            self.query(db)
            .filter(FsNode.user_id == user_id)
            .filter(FsNode.parent_id.in_(list(parent_ids)))
            .order_by(FsNode.id.asc())
            .all()
        )

    def list_live_children(
        self,
        db: Session,
        *,
        user_id: int,
        parent_id: Optional[int],
        order_by: str = "name",
        order_asc: bool = True,
    ) -> list[FsNode]:
        q = (
            self.query(db)
            .filter(FsNode.user_id == user_id)
            .filter(FsNode.parent_id.is_(None) if parent_id is None else FsNode.parent_id == parent_id)
            .filter(FsNode.is_trash.is_(False))
        )
        folders_first = case((FsNode.node_type == NODE_TYPE_FOLDER, 0), else_=1)
        if order_by == "size":
            sort_col = FsNode.size_bytes
        elif order_by == "time":
            sort_col = FsNode.update_time
        else:
            sort_col = func.lower(FsNode.name)
        return q.order_by(
            folders_first.asc(),
            sort_col.asc() if order_asc else sort_col.desc(),
            FsNode.id.asc(),
        ).all()

    def list_starred(self, db: Session, *, user_id: int) -> list[FsNode]:
        return (
            self.query(db)
            .filter(FsNode.user_id == user_id)
            .filter(FsNode.is_starred.is_(True))
            .filter(FsNode.is_trash.is_(False))
            .order_by(FsNode.update_time.desc(), FsNode.id.desc())
            .all()
        )

    def list_trash_roots(self, db: Session, *, user_id: int) -> list[FsNode]:
        """回收站视图：只列出被直接放入回收站的节点，级联进入的子孙随其顶层节点展示。"""
        return (
            self.query(db)
            .filter(FsNode.user_id == user_id)
            .filter(FsNode.is_trash.is_(True))
            .filter(FsNode.trash_root_id == FsNode.id)
            .order_by(FsNode.trashed_at.desc(), FsNode.id.desc())
            .all()
        )

    def list_trashed(self, db: Session, *, user_id: int, before: Optional[datetime] = None) -> list[FsNode]:
        """回收站中的全部节点（含级联进入的子孙）；给定 ``before`` 时只取更早放入的。"""
        q = (
            self.query(db)
            .filter(FsNode.user_id == user_id)
            .filter(FsNode.is_trash.is_(True))
        )
        if before is not None:
            q = q.filter(FsNode.trashed_at < before)
        return q.order_by(FsNode.trashed_at.asc(), FsNode.id.asc()).all()

    def list_folders(self, db: Session, *, user_id: int) -> list[FsNode]:
        return (
            self.query(db)
            .filter(FsNode.user_id == user_id)
            .filter(FsNode.node_type == NODE_TYPE_FOLDER)
            .filter(FsNode.is_trash.is_(False))
            .order_by(func.lower(FsNode.name).asc(), FsNode.id.asc())
            .all()
        )

    def search(self, db: Session, *, user_id: int, keyword: str, limit: int) -> list[FsNode]:
        pattern = f"%{_escape_like(keyword.lower())}%"
        return (
            self.query(db)
            .filter(FsNode.user_id == user_id)
            .filter(FsNode.is_trash.is_(False))
            .filter(func.lower(FsNode.name).like(pattern, escape="\\"))
            .order_by(FsNode.update_time.desc(), FsNode.id.desc())
            .limit(limit)
            .all()
        )

    def sum_file_sizes(self, db: Session, *, user_id: int) -> int:
        total = (
            db.query(func.coalesce(func.sum(FsNode.size_bytes), 0))
            .filter(FsNode.user_id == user_id)
            .filter(FsNode.node_type == NODE_TYPE_FILE)
            .scalar()
        )
        return int(total or 0)

    def referenced_keys(self, db: Session, keys: Iterable[str]) -> set[str]:
        wanted = list(keys)
        if not wanted:
            return set()
        rows = db.query(FsNode.storage_key).filter(FsNode.storage_key.in_(wanted)).all()
        return {row[0] for row in rows}


fs_node_crud = CRUDFsNode(FsNode)
