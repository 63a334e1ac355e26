"""Zip 批量导入：把压缩包解开到指定文件夹下。

第一遍只读目录表：统计解压后总大小、拒绝条目过多或含非法路径的压缩包，并一次性检查配额，
超出时整体拒绝，不创建任何节点。第二遍逐条写入：文件夹按名称复用或惰性创建，文件写入随机 key
的对象后与配额扣减放在同一写入单元内创建节点。

中途失败不会回滚已导入的条目（已知限制），但已创建节点的字节都已计入配额，账本保持准确。
"""

from __future__ import annotations

import mimetypes
import zipfile
import zlib
from typing import BinaryIO, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.constants import DEFAULT_MIME_TYPE, NODE_TYPE_FILE, NODE_TYPE_FOLDER
from app.packages.drive.core.exceptions import AppException, QuotaExceededError
from app.packages.drive.core.logger import logger
from app.packages.drive.crud.fs_node import fs_node_crud
from app.packages.drive.db.unit_of_work import unit_of_work
from app.packages.drive.models.user import User
from app.packages.drive.services import event_bus as events
from app.packages.drive.services.event_bus import event_bus
from app.packages.drive.services.file_service import FileService, file_service, new_storage_key
from app.packages.drive.services.file_tree import file_tree
from app.packages.drive.services.quota_ledger import quota_ledger

# 压缩工具附带的元数据目录，不导入
_IGNORED_PREFIXES = ("__MACOSX/",)


def _entry_parts(info: zipfile.ZipInfo) -> List[str]:
    raw = info.filename.replace("\\", "/")
    if raw.startswith("/") or (len(raw) > 1 and raw[1] == ":"):
        raise AppException(f"压缩包包含非法路径：{info.filename}")
    parts = [p for p in raw.split("/") if p and p != "."]
    if any(p == ".." for p in parts):
        raise AppException(f"压缩包包含非法路径：{info.filename}")
    return parts


class ZipImportService:
    def __init__(self, files: FileService = file_service) -> None:
        self.files = files

    def _scan(self, archive: zipfile.ZipFile) -> Tuple[List[Tuple[zipfile.ZipInfo, List[str]]], int]:
        settings = get_settings()
        infos = archive.infolist()
        if len(infos) > settings.zip_max_entries:
            raise AppException(f"压缩包条目过多（上限 {settings.zip_max_entries}）")
        entries: List[Tuple[zipfile.ZipInfo, List[str]]] = []
        total = 0
        for info in infos:
            if info.filename.replace("\\", "/").startswith(_IGNORED_PREFIXES):
                continue
            parts = [file_tree.normalize_name(p) for p in _entry_parts(info)]
            if not parts:
                continue
            entries.append((info, parts))
            if not info.is_dir():
                total += int(info.file_size)
        return entries, total

    def import_archive(
        self,
        db: Session,
        user: User,
        *,
        stream: BinaryIO,
        filename: Optional[str],
        parent_id: Optional[int] = None,
    ) -> int:
        """导入压缩包，返回新建的节点数（文件夹与文件）。"""
        if not (filename or "").lower().endswith(".zip"):
            raise AppException("请上传 .zip 格式的压缩包")
        file_tree.resolve_parent(db, user_id=user.id, parent_id=parent_id)
        try:
            archive = zipfile.ZipFile(stream)
        except zipfile.BadZipFile as exc:
            raise AppException("压缩包已损坏或格式不正确") from exc

        with archive:
            entries, total = self._scan(archive)
            db.refresh(user)
            if total > quota_ledger.remaining(user):
                raise QuotaExceededError(data=quota_ledger.usage(user))

            created = 0
            written = 0
            folders: Dict[Tuple[str, ...], Optional[int]] = {(): parent_id}
            try:
                for info, parts in entries:
                    dir_parts = parts if info.is_dir() else parts[:-1]
                    folder_id, new_folders = self._ensure_path(db, user, folders, dir_parts)
                    created += new_folders
                    if info.is_dir():
                        continue
                    size = self._import_file(db, user, archive, info, folder_id, parts[-1], total - written)
                    written += size
                    created += 1
            except Exception:
                logger.warning(
                    "Zip import into %s for user %s stopped after %s nodes (%s bytes); imported entries are kept",
                    parent_id,
                    user.id,
                    created,
                    written,
                )
                raise

        event_bus.emit(events.ZIP_IMPORTED, user_id=user.id, parent_id=parent_id, created=created, size=written)
        return created

    def _ensure_path(
        self,
        db: Session,
        user: User,
        folders: Dict[Tuple[str, ...], Optional[int]],
        dir_parts: List[str],
    ) -> Tuple[Optional[int], int]:
        created = 0
        current: Optional[int] = folders[()]
        for depth in range(1, len(dir_parts) + 1):
            path = tuple(dir_parts[:depth])
            if path in folders:
                current = folders[path]
                continue
            name = dir_parts[depth - 1]
            existing = fs_node_crud.get_live_sibling(db, user_id=user.id, parent_id=current, name=name)
            if existing is not None and existing.is_folder:
                current = existing.id
            else:
                with unit_of_work(db, label="zip-folder") as uow:
                    folder = file_tree.create_node(
                        uow, user_id=user.id, parent_id=current, name=name, node_type=NODE_TYPE_FOLDER
                    )
                current = folder.id
                created += 1
            folders[path] = current
        return current, created

    def _import_file(
        self,
        db: Session,
        user: User,
        archive: zipfile.ZipFile,
        info: zipfile.ZipInfo,
        parent_id: Optional[int],
        name: str,
        budget: int,
    ) -> int:
        file_tree.ensure_name_free(db, user_id=user.id, parent_id=parent_id, name=name)
        mime_type = mimetypes.guess_type(name)[0] or DEFAULT_MIME_TYPE
        key = new_storage_key(user.id)
        # 目录表声明的大小不可信，写入时按预检时的总额度封顶
        try:
            with archive.open(info) as src:
                size = self.files.backend.put(key, src, content_type=mime_type, max_bytes=max(budget, 0))
        except (zipfile.BadZipFile, zlib.error) as exc:
            # 条目数据损坏（CRC 不符、压缩流错误），后端已清理写了一半的对象
            raise AppException(f"压缩包已损坏或格式不正确：{info.filename}") from exc
        try:
            with unit_of_work(db, label="zip-file") as uow:
                quota_ledger.commit(uow, user_id=user.id, nbytes=size)
                file_tree.create_node(
                    uow,
                    user_id=user.id,
                    parent_id=parent_id,
                    name=name,
                    node_type=NODE_TYPE_FILE,
                    storage_key=key,
                    size_bytes=size,
                    mime_type=mime_type,
                )
        except Exception:
            self.files.discard_blob(key)
            raise
        return size


zip_import_service = ZipImportService()
