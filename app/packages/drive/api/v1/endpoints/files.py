"""文件与文件夹操作路由：薄适配层，参数校验后交给 ``file_service`` 执行。

静态路径（/files/starred、/files/trash、/files/blob 等）必须声明在 ``/files/{node_id}`` 之前。
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, Header, Query, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.packages.drive.api.v1.schemas.common import CountOut, CountResponse
from app.packages.drive.api.v1.schemas.files import (
    BreadcrumbItem,
    BulkIdsBody,
    BulkStarBody,
    DownloadLinkOut,
    DownloadLinkResponse,
    FolderCreateBody,
    MoveBody,
    NodeDetailOut,
    NodeDetailResponse,
    NodeListResponse,
    NodeOut,
    NodeResponse,
    RenameBody,
    StarOut,
    StarResponse,
    StorageUsageOut,
    StorageUsageResponse,
    ZipImportOut,
    ZipImportResponse,
)
from app.packages.drive.core.constants import (
    HTTP_STATUS_BAD_REQUEST,
    HTTP_STATUS_CREATED,
    HTTP_STATUS_OK,
    HTTP_STATUS_PARTIAL_CONTENT,
    LIST_FILTER_ALL,
    LIST_FILTER_STARRED,
    LIST_FILTER_TRASH,
)
from app.packages.drive.core.dependencies import get_current_active_user, get_db
from app.packages.drive.core.exceptions import AppException
from app.packages.drive.core.responses import create_response
from app.packages.drive.models.fs_node import FsNode
from app.packages.drive.models.user import User
from app.packages.drive.services.file_service import file_service
from app.packages.drive.services.storage_backends import BlobStream
from app.packages.drive.services.zip_import import zip_import_service
from app.packages.drive.utils.http_range import parse_range

router = APIRouter(tags=["files"])


def _parse_parent_id(raw: Optional[str]) -> Optional[int]:
    """表单中的 parentId 可能为空串或 "null"，统一视为根目录。"""
    value = (raw or "").strip()
    if value in ("", "null", "undefined", "root"):
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise AppException("parentId 不合法", HTTP_STATUS_BAD_REQUEST) from exc


def _node_list(nodes) -> list[dict]:
    return [NodeOut.from_node(n).model_dump() for n in nodes]


def _stream_response(node: FsNode, blob: BlobStream, *, disposition: str) -> StreamingResponse:
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Length": str(blob.content_length),
        "Content-Disposition": f"{disposition}; filename*=UTF-8''{quote(node.name)}",
    }
    status_code = HTTP_STATUS_OK
    if blob.content_range:
        headers["Content-Range"] = blob.content_range
        status_code = HTTP_STATUS_PARTIAL_CONTENT
    return StreamingResponse(
        blob.body,
        status_code=status_code,
        media_type=node.mime_type or blob.content_type or "application/octet-stream",
        headers=headers,
    )


# ----------------------------
# 查询
# ----------------------------
@router.get("/files", response_model=NodeListResponse)
def list_files(
    parent_id: Optional[int] = Query(None, alias="parentId"),
    filter: str = Query(LIST_FILTER_ALL, pattern=r"^(all|starred|trash)$"),
    order_by: str = Query("name", alias="orderBy", pattern=r"^(name|size|time)$"),
    order: str = Query("asc", pattern=r"^(asc|desc)$"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    nodes = file_service.list_nodes(
        db, current_user, parent_id=parent_id, filter=filter, order_by=order_by, order=order
    )
    return create_response("获取文件列表成功", _node_list(nodes))


@router.get("/files/starred", response_model=NodeListResponse)
def list_starred(db: Session = Depends(get_db), current_user: User = Depends(get_current_active_user)):
    nodes = file_service.list_nodes(db, current_user, filter=LIST_FILTER_STARRED)
    return create_response("获取收藏列表成功", _node_list(nodes))


@router.get("/files/trash", response_model=NodeListResponse)
def list_trash(db: Session = Depends(get_db), current_user: User = Depends(get_current_active_user)):
    nodes = file_service.list_nodes(db, current_user, filter=LIST_FILTER_TRASH)
    return create_response("获取回收站列表成功", _node_list(nodes))


@router.get("/files/search", response_model=NodeListResponse)
def search_files(
    q: str = Query("", max_length=255),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    return create_response("搜索成功", _node_list(file_service.search(db, current_user, q)))


@router.get("/files/storage", response_model=StorageUsageResponse)
def storage_usage(db: Session = Depends(get_db), current_user: User = Depends(get_current_active_user)):
    usage = file_service.storage_usage(db, current_user)
    return create_response("获取存储用量成功", StorageUsageOut(**usage).model_dump())


@router.get("/files/folders", response_model=NodeListResponse)
def list_folders(db: Session = Depends(get_db), current_user: User = Depends(get_current_active_user)):
    return create_response("获取文件夹列表成功", _node_list(file_service.list_folders(db, current_user)))


@router.get("/files/blob")
def download_signed_blob(
    t: str = Query(..., description="短期签名 token，由下载接口签发"),
    range_header: Optional[str] = Header(None, alias="Range"),
    db: Session = Depends(get_db),
):
    """LOCAL 存储的下载直链目标，凭签名令牌匿名访问，支持 Range。"""
    node = file_service.resolve_blob_token(db, t)
    blob = file_service.open_blob(node, parse_range(range_header, int(node.size_bytes or 0)))
    return _stream_response(node, blob, disposition="attachment")


# ----------------------------
# 创建
# ----------------------------
@router.post("/files/folders", response_model=NodeResponse, status_code=HTTP_STATUS_CREATED)
def create_folder(
    payload: FolderCreateBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    node = file_service.create_folder(db, current_user, name=payload.name, parent_id=payload.parentId)
    return create_response("文件夹创建成功", NodeOut.from_node(node).model_dump(), HTTP_STATUS_CREATED)


@router.post("/files/upload", response_model=NodeResponse, status_code=HTTP_STATUS_CREATED)
def upload_file(
    file: UploadFile = File(...),
    parent_id: Optional[str] = Form(None, alias="parentId"),
    relative_path: Optional[str] = Form(None, alias="relativePath"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    try:
        node = file_service.upload(
            db,
            current_user,
            stream=file.file,
            filename=file.filename,
            content_type=file.content_type,
            declared_size=file.size,
            parent_id=_parse_parent_id(parent_id),
            relative_path=relative_path,
        )
    finally:
        file.file.close()
    return create_response("文件上传成功", NodeOut.from_node(node).model_dump(), HTTP_STATUS_CREATED)


@router.post("/files/upload-zip", response_model=ZipImportResponse, status_code=HTTP_STATUS_CREATED)
def upload_zip(
    file: UploadFile = File(...),
    parent_id: Optional[str] = Form(None, alias="parentId"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    try:
        created = zip_import_service.import_archive(
            db,
            current_user,
            stream=file.file,
            filename=file.filename,
            parent_id=_parse_parent_id(parent_id),
        )
    finally:
        file.file.close()
    return create_response("压缩包导入成功", ZipImportOut(createdCount=created).model_dump(), HTTP_STATUS_CREATED)


# ----------------------------
# 批量操作
# ----------------------------
@router.post("/files/bulk-star", response_model=CountResponse)
def bulk_star(
    payload: BulkStarBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    count = file_service.bulk_star(db, current_user, payload.ids, payload.starred)
    return create_response("批量收藏完成", CountOut(count=count).model_dump())


@router.post("/files/bulk-trash", response_model=CountResponse)
def bulk_trash(
    payload: BulkIdsBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    count = file_service.bulk_trash(db, current_user, payload.ids)
    return create_response("已移入回收站", CountOut(count=count).model_dump())


@router.post("/files/bulk-restore", response_model=CountResponse)
def bulk_restore(
    payload: BulkIdsBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    count = file_service.bulk_restore(db, current_user, payload.ids)
    return create_response("已从回收站恢复", CountOut(count=count).model_dump())


@router.post("/files/bulk-delete", response_model=CountResponse)
def bulk_delete(
    payload: BulkIdsBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    count = file_service.bulk_delete(db, current_user, payload.ids)
    return create_response("已永久删除", CountOut(count=count).model_dump())


@router.delete("/files/trash/empty", response_model=CountResponse)
def empty_trash(db: Session = Depends(get_db), current_user: User = Depends(get_current_active_user)):
    count = file_service.empty_trash(db, current_user)
    return create_response("回收站已清空", CountOut(count=count).model_dump())


# ----------------------------
# 单个节点
# ----------------------------
@router.get("/files/{node_id}", response_model=NodeDetailResponse)
def get_node(node_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_active_user)):
    node, ancestors = file_service.get_details(db, current_user, node_id)
    detail = NodeDetailOut(
        node=NodeOut.from_node(node),
        breadcrumbs=[BreadcrumbItem(id=a.id, name=a.name) for a in ancestors],
    )
    return create_response("获取文件信息成功", detail.model_dump())


@router.patch("/files/{node_id}", response_model=NodeResponse)
def rename_node(
    node_id: int,
    payload: RenameBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    node = file_service.rename(db, current_user, node_id, payload.name)
    return create_response("重命名成功", NodeOut.from_node(node).model_dump())


@router.post("/files/{node_id}/move", response_model=NodeResponse)
def move_node(
    node_id: int,
    payload: MoveBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    node = file_service.move(db, current_user, node_id, payload.parentId)
    return create_response("移动成功", NodeOut.from_node(node).model_dump())


@router.patch("/files/{node_id}/star", response_model=StarResponse)
def toggle_star(node_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_active_user)):
    node = file_service.toggle_star(db, current_user, node_id)
    return create_response("收藏状态已更新", StarOut(id=node.id, isStarred=bool(node.is_starred)).model_dump())


@router.patch("/files/{node_id}/trash", response_model=CountResponse)
def trash_node(node_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_active_user)):
    count = file_service.trash(db, current_user, node_id)
    return create_response("已移入回收站", CountOut(count=count).model_dump())


@router.post("/files/{node_id}/restore", response_model=CountResponse)
def restore_node(node_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_active_user)):
    count = file_service.restore(db, current_user, node_id)
    return create_response("已从回收站恢复", CountOut(count=count).model_dump())


@router.delete("/files/{node_id}", response_model=CountResponse)
def delete_node(node_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_active_user)):
    count = file_service.permanent_delete(db, current_user, node_id)
    return create_response("已永久删除", CountOut(count=count).model_dump())


@router.get("/files/{node_id}/download", response_model=DownloadLinkResponse)
def download_link(node_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_active_user)):
    link = file_service.download_link(db, current_user, node_id)
    return create_response("获取下载链接成功", DownloadLinkOut(**link).model_dump())


@router.get("/files/{node_id}/stream")
def stream_file(
    node_id: int,
    range_header: Optional[str] = Header(None, alias="Range"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
):
    """按 Range 读取文件内容，用于在线播放与断点续传。"""
    node = file_service.get_file(db, current_user, node_id)
    blob = file_service.open_blob(node, parse_range(range_header, int(node.size_bytes or 0)))
    return _stream_response(node, blob, disposition="inline")
