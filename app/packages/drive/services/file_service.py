"""文件生命周期引擎：编排元数据、对象存储与配额三方之间的多步操作。

写入顺序遵循一条原则：宁可留下没有元数据引用的孤儿对象，也不能让元数据指向不存在的对象。
- 上传：预检配额 -> 写对象（随机 key，超出剩余配额即中断） -> 同一写入单元内扣减配额并创建节点，
  失败时删除刚写入的对象作为补偿；
- 永久删除：由深到浅逐个处理，先删对象，再删元数据并释放配额，单项失败记录日志后继续；
- 移动与重命名只改元数据，对象 key 与路径无关。
"""

from __future__ import annotations

import mimetypes
import uuid
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.constants import (
    DEFAULT_MIME_TYPE,
    HTTP_STATUS_PAYLOAD_TOO_LARGE,
    HTTP_STATUS_UNAUTHORIZED,
    LIST_FILTER_ALL,
    NODE_TYPE_FILE,
    NODE_TYPE_FOLDER,
    STORAGE_KEY_ROOT,
)
from app.packages.drive.core.exceptions import (
    AppException,
    NotFoundError,
    QuotaExceededError,
    UploadFailedError,
)
from app.packages.drive.core.logger import logger
from app.packages.drive.core.security import decode_and_verify_token
from app.packages.drive.crud.fs_node import fs_node_crud
from app.packages.drive.db.unit_of_work import unit_of_work
from app.packages.drive.models.fs_node import FsNode
from app.packages.drive.models.user import User
from app.packages.drive.services import event_bus as events
from app.packages.drive.services.event_bus import event_bus
from app.packages.drive.services.file_tree import file_tree
from app.packages.drive.services.quota_ledger import quota_ledger
from app.packages.drive.services.storage_backends import BlobStream, ByteRange, StorageBackend, get_storage_backend


def _guess_mime(name: str, declared: Optional[str]) -> str:
    if declared and declared != DEFAULT_MIME_TYPE:
        return declared
    mime, _ = mimetypes.guess_type(name)
    return mime or declared or DEFAULT_MIME_TYPE


def new_storage_key(user_id: int) -> str:
    """生成不透明的对象 key，与文件名、所在目录均无关。"""
    return f"{STORAGE_KEY_ROOT}/{user_id}/{uuid.uuid4().hex}"


def split_relative_path(relative_path: Optional[str], filename: Optional[str]) -> Tuple[List[str], str]:
    """把浏览器目录上传携带的相对路径拆为（目录段列表, 文件名）。"""
    rel = (relative_path or "").replace("\\", "/").strip()
    parts = [p.strip() for p in rel.split("/") if p.strip() and p.strip() != "."]
    if parts:
        return parts[:-1], parts[-1]
    base = (filename or "").replace("\\", "/").rsplit("/", 1)[-1]
    return [], base


class FileService:
    def __init__(self, backend: Optional[StorageBackend] = None) -> None:
        self._backend = backend

    @property
    def backend(self) -> StorageBackend:
        return self._backend or get_storage_backend()

    # ----------------------------
    # 查询
    # ----------------------------
    def list_nodes(
        self,
        db: Session,
        user: User,
        *,
        parent_id: Optional[int] = None,
        filter: str = LIST_FILTER_ALL,
        order_by: str = "name",
        order: str = "asc",
    ) -> List[FsNode]:
        return file_tree.list_children(
            db, user_id=user.id, parent_id=parent_id, filter=filter, order_by=order_by, order=order
        )

    def search(self, db: Session, user: User, query: str) -> List[FsNode]:
        return file_tree.search(db, user_id=user.id, query=query, limit=get_settings().search_result_limit)

    def list_folders(self, db: Session, user: User) -> List[FsNode]:
        return fs_node_crud.list_folders(db, user_id=user.id)

    def get_details(self, db: Session, user: User, node_id: int) -> Tuple[FsNode, List[FsNode]]:
        node = file_tree.get_node(db, user_id=user.id, node_id=node_id)
        return node, file_tree.get_ancestors(db, user_id=user.id, node=node)

    def storage_usage(self, db: Session, user: User) -> Dict[str, Any]:
        db.refresh(user)
        return quota_ledger.usage(user)

    # ----------------------------
    # 创建
    # ----------------------------
    def create_folder(self, db: Session, user: User, *, name: str, parent_id: Optional[int] = None) -> FsNode:
        with unit_of_work(db, label="create-folder") as uow:
            node = file_tree.create_node(
                uow, user_id=user.id, parent_id=parent_id, name=name, node_type=NODE_TYPE_FOLDER
            )
        db.refresh(node)
        event_bus.emit(events.FOLDER_CREATED, user_id=user.id, node_id=node.id, name=node.name)
        return node

    def upload(
        self,
        db: Session,
        user: User,
        *,
        stream: BinaryIO,
        filename: Optional[str],
        content_type: Optional[str] = None,
        declared_size: Optional[int] = None,
        parent_id: Optional[int] = None,
        relative_path: Optional[str] = None,
    ) -> FsNode:
        settings = get_settings()

        # 所有校验都在写对象之前完成
        file_tree.resolve_parent(db, user_id=user.id, parent_id=parent_id)
        dir_parts, raw_name = split_relative_path(relative_path, filename)
        name = file_tree.normalize_name(raw_name)
        dir_parts = [file_tree.normalize_name(part) for part in dir_parts]
        if declared_size is not None and declared_size > settings.upload_max_bytes:
            raise AppException("文件大小超过上传限制", HTTP_STATUS_PAYLOAD_TOO_LARGE)
        db.refresh(user)
        quota_ledger.reserve(user, declared_size)
        if not dir_parts:
            file_tree.ensure_name_free(db, user_id=user.id, parent_id=parent_id, name=name)

        remaining = quota_ledger.remaining(user)
        max_bytes = min(remaining, settings.upload_max_bytes)
        mime_type = _guess_mime(name, content_type)
        key = new_storage_key(user.id)

        try:
            size = self.backend.put(key, stream, content_type=mime_type, max_bytes=max_bytes)
        except QuotaExceededError:
            if remaining > settings.upload_max_bytes:
                raise AppException("文件大小超过上传限制", HTTP_STATUS_PAYLOAD_TOO_LARGE)
            raise QuotaExceededError(data=quota_ledger.usage(user))

        try:
            with unit_of_work(db, label="upload") as uow:
                quota_ledger.commit(uow, user_id=user.id, nbytes=size)
                current_parent = parent_id
                for part in dir_parts:
                    current_parent = file_tree.ensure_folder(
                        uow, user_id=user.id, parent_id=current_parent, name=part
                    ).id
                node = file_tree.create_node(
                    uow,
                    user_id=user.id,
                    parent_id=current_parent,
                    name=name,
                    node_type=NODE_TYPE_FILE,
                    storage_key=key,
                    size_bytes=size,
                    mime_type=mime_type,
                )
        except AppException:
            self.discard_blob(key)
            raise
        except Exception as exc:
            logger.error("Upload metadata write failed for user %s: %s", user.id, exc, exc_info=exc)
            self.discard_blob(key)
            raise UploadFailedError() from exc

        db.refresh(node)
        event_bus.emit(events.FILE_UPLOADED, user_id=user.id, node_id=node.id, size=size, name=node.name)
        return node

    def discard_blob(self, key: str) -> None:
        """补偿删除；失败只记录，留给孤儿对象清理任务，不改变返回给用户的错误。"""
        try:
            self.backend.delete(key)
        except Exception as exc:  # noqa: BLE001 - compensation must not mask the original error
            logger.error("Compensation delete failed, blob %s is orphaned: %s", key, exc, exc_info=exc)
            event_bus.emit(events.BLOB_ORPHANED, key=key)

    # ----------------------------
    # 重命名 / 移动 / 收藏
    # ----------------------------
    def rename(self, db: Session, user: User, node_id: int, new_name: str) -> FsNode:
        node = file_tree.get_live_node(db, user_id=user.id, node_id=node_id)
        old_name = node.name
        with unit_of_work(db, label="rename") as uow:
            file_tree.rename(uow, node, new_name)
        db.refresh(node)
        if node.name != old_name:
            event_bus.emit(events.NODE_RENAMED, user_id=user.id, node_id=node.id, name=node.name)
        return node

    def move(self, db: Session, user: User, node_id: int, new_parent_id: Optional[int]) -> FsNode:
        node = file_tree.get_live_node(db, user_id=user.id, node_id=node_id)
        with unit_of_work(db, label="move") as uow:
            file_tree.reparent(uow, node, new_parent_id)
        db.refresh(node)
        event_bus.emit(events.NODE_MOVED, user_id=user.id, node_id=node.id, parent_id=node.parent_id)
        return node

    def toggle_star(self, db: Session, user: User, node_id: int) -> FsNode:
        node = file_tree.get_node(db, user_id=user.id, node_id=node_id)
        with unit_of_work(db, label="star") as uow:
            node.is_starred = not node.is_starred
            uow.add(node)
        db.refresh(node)
        return node

    def bulk_star(self, db: Session, user: User, ids: Iterable[int], starred: bool) -> int:
        affected = 0
        for node_id in dict.fromkeys(ids):
            node = fs_node_crud.get_owned(db, user_id=user.id, node_id=node_id)
            if node is None or bool(node.is_starred) == bool(starred):
                continue
            with unit_of_work(db, label="bulk-star") as uow:
                node.is_starred = bool(starred)
                uow.add(node)
            affected += 1
        return affected

    # ----------------------------
    # 回收站
    # ----------------------------
    def trash(self, db: Session, user: User, node_id: int) -> int:
        node = file_tree.get_node(db, user_id=user.id, node_id=node_id)
        with unit_of_work(db, label="trash") as uow:
            changed = file_tree.mark_trash(uow, node, True)
        if changed:
            event_bus.emit(events.NODE_TRASHED, user_id=user.id, node_id=node_id, count=changed)
        return changed

    def restore(self, db: Session, user: User, node_id: int) -> int:
        node = file_tree.get_node(db, user_id=user.id, node_id=node_id)
        with unit_of_work(db, label="restore") as uow:
            changed = file_tree.mark_trash(uow, node, False)
        if changed:
            event_bus.emit(events.NODE_RESTORED, user_id=user.id, node_id=node_id, count=changed)
        return changed

    def bulk_trash(self, db: Session, user: User, ids: Iterable[int]) -> int:
        return self._bulk(db, user, ids, self.trash, "bulk-trash")

    def bulk_restore(self, db: Session, user: User, ids: Iterable[int]) -> int:
        return self._bulk(db, user, ids, self.restore, "bulk-restore")

    def _bulk(self, db: Session, user: User, ids: Iterable[int], action, label: str) -> int:
        """逐个执行单项操作；不存在或不属于当前用户的 id 直接跳过，单项失败不影响其余项。"""
        affected = 0
        for node_id in dict.fromkeys(ids):
            if fs_node_crud.get_owned(db, user_id=user.id, node_id=node_id) is None:
                continue
            try:
                if action(db, user, node_id):
                    affected += 1
            except AppException as exc:
                logger.warning("%s skipped node %s: %s", label, node_id, exc.detail)
            except Exception as exc:
                logger.error("%s failed for node %s: %s", label, node_id, exc, exc_info=exc)
        return affected

    # ----------------------------
    # 永久删除
    # ----------------------------
    def permanent_delete(self, db: Session, user: User, node_id: int) -> int:
        node = file_tree.get_node(db, user_id=user.id, node_id=node_id)
        return self.purge(db, user_id=user.id, node=node)

    def bulk_delete(self, db: Session, user: User, ids: Iterable[int]) -> int:
        affected = 0
        for node_id in dict.fromkeys(ids):
            # 先处理的文件夹可能已连带删除了后面的 id
            node = fs_node_crud.get_owned(db, user_id=user.id, node_id=node_id)
            if node is None:
                continue
            if self.purge(db, user_id=user.id, node=node):
                affected += 1
        return affected

    def empty_trash(self, db: Session, user: User) -> int:
        return self.purge_many(db, user_id=user.id, nodes=fs_node_crud.list_trashed(db, user_id=user.id))

    def purge_many(self, db: Session, *, user_id: int, nodes: Iterable[FsNode]) -> int:
        """依次永久删除候选节点；每项执行前重新确认节点仍存在，避免重复释放配额。"""
        total = 0
        candidate_ids = [n.id for n in nodes]
        for node_id in candidate_ids:
            node = fs_node_crud.get_owned(db, user_id=user_id, node_id=node_id)
            if node is None:
                continue
            total += self.purge(db, user_id=user_id, node=node)
        return total

    def purge(self, db: Session, *, user_id: int, node: FsNode) -> int:
        """删除节点及其整棵子树，返回实际删除的节点数。

        由深到浅处理：文件先删对象，再在同一写入单元里删除元数据并释放配额。
        某一项失败时记录日志并继续，其祖先文件夹保留，避免子节点失去父目录。
        """
        root_id = node.id
        subtree = [node, *file_tree.find_descendants(db, user_id=user_id, node_id=node.id)]
        plan = [(n.id, n.parent_id, n.node_type, n.storage_key, int(n.size_bytes or 0)) for n in subtree]

        deleted = 0
        freed = 0
        blocked: set[int] = set()
        for target_id, parent_id, node_type, storage_key, size in reversed(plan):
            if target_id in blocked:
                if parent_id is not None:
                    blocked.add(parent_id)
                continue
            try:
                if node_type == NODE_TYPE_FILE and storage_key:
                    self.backend.delete(storage_key)
                target = fs_node_crud.get_owned(db, user_id=user_id, node_id=target_id)
                if target is None:
                    continue
                with unit_of_work(db, label="permanent-delete") as uow:
                    uow.delete(target)
                    if node_type == NODE_TYPE_FILE:
                        quota_ledger.release(uow, user_id=user_id, nbytes=size)
                deleted += 1
                if node_type == NODE_TYPE_FILE:
                    freed += size
            except Exception as exc:  # noqa: BLE001 - continue with the remaining items
                logger.error(
                    "Permanent delete failed for node %s (user %s): %s", target_id, user_id, exc, exc_info=exc
                )
                if parent_id is not None:
                    blocked.add(parent_id)

        if deleted:
            event_bus.emit(events.NODE_DELETED, user_id=user_id, node_id=root_id, count=deleted, freed=freed)
        return deleted

    # ----------------------------
    # 下载
    # ----------------------------
    def get_file(self, db: Session, user: User, node_id: int) -> FsNode:
        node = file_tree.get_node(db, user_id=user.id, node_id=node_id)
        if not node.is_file or not node.storage_key:
            raise NotFoundError("文件不存在")
        return node

    def download_link(self, db: Session, user: User, node_id: int) -> Dict[str, str]:
        node = self.get_file(db, user, node_id)
        url = self.backend.presign_download(
            node.storage_key, ttl=get_settings().presign_expire_seconds, filename=node.name
        )
        return {"url": url, "name": node.name}

    def resolve_blob_token(self, db: Session, token: str) -> FsNode:
        """校验 LOCAL 下载直链令牌，返回对应的文件节点。"""
        payload = decode_and_verify_token(token, verify_exp=True)
        if not payload or payload.get("scope") != "blob" or not isinstance(payload.get("key"), str):
            raise AppException("签名无效或已过期", HTTP_STATUS_UNAUTHORIZED)
        node = fs_node_crud.get_by_storage_key(db, payload["key"])
        if node is None:
            raise NotFoundError("文件不存在")
        return node

    def open_blob(self, node: FsNode, byte_range: Optional[ByteRange] = None) -> BlobStream:
        return self.backend.get_stream(node.storage_key, byte_range)


file_service = FileService()
