"""文件树：维护层级不变式（同级重名、无环、回收站级联）并回答结构性查询。

子树查询基于 ``parent_id`` 索引逐层展开，每层一条 ``IN`` 查询，
不依赖递归 CTE，也不会一次性加载用户的整棵树。
"""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.packages.drive.core.constants import (
    LIST_FILTER_ALL,
    LIST_FILTER_STARRED,
    LIST_FILTER_TRASH,
    MAX_NODE_NAME_LENGTH,
    NODE_TYPE_FILE,
    NODE_TYPE_FOLDER,
)
from app.packages.drive.core.exceptions import (
    AppException,
    CycleError,
    InvalidNameError,
    NameConflictError,
    NotFoundError,
    ParentNotFoundError,
)
from app.packages.drive.core.timezone import utcnow
from app.packages.drive.crud.fs_node import fs_node_crud
from app.packages.drive.db.unit_of_work import UnitOfWork
from app.packages.drive.models.fs_node import FsNode

_FORBIDDEN_CHARS = ("/", "\\", "\x00")


class FileTree:
    # ----------------------------
    # 名称与节点解析
    # ----------------------------
    def normalize_name(self, raw: Optional[str]) -> str:
        name = (raw or "").strip()
        if not name:
            raise InvalidNameError("名称不能为空")
        if len(name) > MAX_NODE_NAME_LENGTH:
            raise InvalidNameError(f"名称长度不能超过 {MAX_NODE_NAME_LENGTH} 个字符")
        if name in (".", ".."):
            raise InvalidNameError()
        if any(ch in name for ch in _FORBIDDEN_CHARS):
            raise InvalidNameError("名称不能包含 / 或 \\")
        return name

    def get_node(self, db: Session, *, user_id: int, node_id: int) -> FsNode:
        node = fs_node_crud.get_owned(db, user_id=user_id, node_id=node_id)
        if node is None:
            raise NotFoundError()
        return node

    def get_live_node(self, db: Session, *, user_id: int, node_id: int) -> FsNode:
        node = self.get_node(db, user_id=user_id, node_id=node_id)
        if node.is_trash:
            raise NotFoundError()
        return node

    def resolve_parent(self, db: Session, *, user_id: int, parent_id: Optional[int]) -> Optional[FsNode]:
        """``None`` 表示根目录；否则必须是同一用户、未进入回收站的文件夹。"""
        if parent_id is None:
            return None
        parent = fs_node_crud.get_owned(db, user_id=user_id, node_id=parent_id)
        if parent is None or parent.is_trash or not parent.is_folder:
            raise ParentNotFoundError()
        return parent

    def ensure_name_free(
        self,
        db: Session,
        *,
        user_id: int,
        parent_id: Optional[int],
        name: str,
        exclude_id: Optional[int] = None,
    ) -> None:
        clash = fs_node_crud.get_live_sibling(
            db, user_id=user_id, parent_id=parent_id, name=name, exclude_id=exclude_id
        )
        if clash is not None:
            raise NameConflictError()

    # ----------------------------
    # 查询
    # ----------------------------
    def list_children(
        self,
        db: Session,
        *,
        user_id: int,
        parent_id: Optional[int] = None,
        filter: str = LIST_FILTER_ALL,
        order_by: str = "name",
        order: str = "asc",
    ) -> List[FsNode]:
        if filter == LIST_FILTER_STARRED:
            return fs_node_crud.list_starred(db, user_id=user_id)
        if filter == LIST_FILTER_TRASH:
            return fs_node_crud.list_trash_roots(db, user_id=user_id)
        if filter != LIST_FILTER_ALL:
            raise AppException("不支持的筛选条件")
        if parent_id is not None:
            self.resolve_parent(db, user_id=user_id, parent_id=parent_id)
        return fs_node_crud.list_live_children(
            db,
            user_id=user_id,
            parent_id=parent_id,
            order_by=order_by,
            order_asc=(order or "asc").lower() != "desc",
        )

    def find_descendants(self, db: Session, *, user_id: int, node_id: int) -> List[FsNode]:
        """返回子树中除自身外的所有节点，按层级由浅到深排列。"""
        result: List[FsNode] = []
        seen = {node_id}
        frontier = [node_id]
        while frontier:
            children = fs_node_crud.list_children_of(db, user_id=user_id, parent_ids=frontier)
            frontier = []
            for child in children:
                if child.id in seen:
                    continue
                seen.add(child.id)
                result.append(child)
                if child.is_folder:
                    frontier.append(child.id)
        return result

    def get_ancestors(self, db: Session, *, user_id: int, node: FsNode) -> List[FsNode]:
        """从根到直接父目录的祖先链；遇到重复节点说明数据已成环，立即中止。"""
        chain: List[FsNode] = []
        visited = {node.id}
        parent_id = node.parent_id
        while parent_id is not None:
            if parent_id in visited:
                raise CycleError("目录层级存在循环引用")
            visited.add(parent_id)
            parent = fs_node_crud.get_owned(db, user_id=user_id, node_id=parent_id)
            if parent is None:
                break
            chain.append(parent)
            parent_id = parent.parent_id
        chain.reverse()
        return chain

    def search(self, db: Session, *, user_id: int, query: str, limit: int = 50) -> List[FsNode]:
        keyword = (query or "").strip()
        if not keyword:
            return []
        return fs_node_crud.search(db, user_id=user_id, keyword=keyword, limit=limit)

    # ----------------------------
    # 写入（均在调用方的写入单元内执行）
    # ----------------------------
    def create_node(
        self,
        uow: UnitOfWork,
        *,
        user_id: int,
        parent_id: Optional[int],
        name: str,
        node_type: str,
        storage_key: Optional[str] = None,
        size_bytes: int = 0,
        mime_type: Optional[str] = None,
    ) -> FsNode:
        name = self.normalize_name(name)
        self.resolve_parent(uow.db, user_id=user_id, parent_id=parent_id)
        self.ensure_name_free(uow.db, user_id=user_id, parent_id=parent_id, name=name)
        node = FsNode(
            user_id=user_id,
            parent_id=parent_id,
            name=name,
            node_type=node_type,
            storage_key=storage_key if node_type == NODE_TYPE_FILE else None,
            size_bytes=int(size_bytes or 0) if node_type == NODE_TYPE_FILE else 0,
            mime_type=mime_type if node_type == NODE_TYPE_FILE else None,
            is_starred=False,
            is_trash=False,
        )
        try:
            uow.add(node)
        except IntegrityError as exc:
            # 并发请求绕过了先查后写的校验，由唯一索引兜底
            raise NameConflictError() from exc
        return node

    def ensure_folder(self, uow: UnitOfWork, *, user_id: int, parent_id: Optional[int], name: str) -> FsNode:
        """按名称复用已有的同级文件夹，不存在时创建。"""
        name = self.normalize_name(name)
        existing = fs_node_crud.get_live_sibling(uow.db, user_id=user_id, parent_id=parent_id, name=name)
        if existing is not None:
            if not existing.is_folder:
                raise NameConflictError(f"已存在同名文件：{name}")
            return existing
        return self.create_node(uow, user_id=user_id, parent_id=parent_id, name=name, node_type=NODE_TYPE_FOLDER)

    def rename(self, uow: UnitOfWork, node: FsNode, new_name: str) -> FsNode:
        name = self.normalize_name(new_name)
        if node.is_trash:
            raise NotFoundError()
        if name == node.name:
            return node
        self.ensure_name_free(uow.db, user_id=node.user_id, parent_id=node.parent_id, name=name, exclude_id=node.id)
        node.name = name
        try:
            uow.add(node)
        except IntegrityError as exc:
            raise NameConflictError() from exc
        return node

    def reparent(self, uow: UnitOfWork, node: FsNode, new_parent_id: Optional[int]) -> FsNode:
        """移动节点：只改 ``parent_id``，对象 key 与路径无关，不触碰任何对象。"""
        db = uow.db
        if node.is_trash:
            raise NotFoundError()
        if new_parent_id is not None and new_parent_id == node.id:
            raise CycleError()
        target = self.resolve_parent(db, user_id=node.user_id, parent_id=new_parent_id)
        if target is not None and node.is_folder:
            if any(a.id == node.id for a in self.get_ancestors(db, user_id=node.user_id, node=target)):
                raise CycleError()
        if node.parent_id == new_parent_id:
            return node
        self.ensure_name_free(db, user_id=node.user_id, parent_id=new_parent_id, name=node.name, exclude_id=node.id)
        node.parent_id = new_parent_id
        try:
            uow.add(node)
        except IntegrityError as exc:
            raise NameConflictError() from exc
        return node

    def mark_trash(self, uow: UnitOfWork, node: FsNode, trashed: bool) -> int:
        """放入或移出回收站，并级联到同一批次的全部子孙节点；返回状态变化的节点数。"""
        if trashed:
            return self._trash(uow, node)
        return self._restore(uow, node)

    def _trash(self, uow: UnitOfWork, node: FsNode) -> int:
        if node.is_trash:
            return 0
        stamp = utcnow()
        changed = 0
        # 已单独放入回收站的子孙保留原批次，可单独恢复
        for target in [node, *self.find_descendants(uow.db, user_id=node.user_id, node_id=node.id)]:
            if target.is_trash:
                continue
            target.is_trash = True
            target.trashed_at = stamp
            target.trash_root_id = node.id
            uow.add(target)
            changed += 1
        return changed

    def _restore(self, uow: UnitOfWork, node: FsNode) -> int:
        if not node.is_trash:
            return 0
        db = uow.db
        batch_id = node.trash_root_id
        if node.parent_id is not None:
            parent = fs_node_crud.get_owned(db, user_id=node.user_id, node_id=node.parent_id)
            if parent is None or parent.is_trash or not parent.is_folder:
                node.parent_id = None
        self.ensure_name_free(db, user_id=node.user_id, parent_id=node.parent_id, name=node.name, exclude_id=node.id)

        members = [
            d
            for d in self.find_descendants(db, user_id=node.user_id, node_id=node.id)
            if d.is_trash and d.trash_root_id == batch_id
        ]
        changed = 0
        try:
            for target in [node, *members]:
                target.is_trash = False
                target.trashed_at = None
                target.trash_root_id = None
                uow.add(target)
                changed += 1
        except IntegrityError as exc:
            raise NameConflictError() from exc
        return changed


file_tree = FileTree()
