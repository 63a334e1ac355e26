"""网盘文件与文件夹接口的请求/响应模型。"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from app.packages.drive.api.v1.schemas.common import ResponseEnvelope
from app.packages.drive.core.timezone import isoformat
from app.packages.drive.models.fs_node import FsNode


class NodeOut(BaseModel):
    id: int
    name: str
    type: str
    parentId: Optional[int] = None
    size: int = 0
    mimeType: Optional[str] = None
    isStarred: bool = False
    isTrash: bool = False
    trashedAt: Optional[str] = None
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None

    @classmethod
    def from_node(cls, node: FsNode) -> "NodeOut":
        return cls(
            id=node.id,
            name=node.name,
            type=node.node_type,
            parentId=node.parent_id,
            size=int(node.size_bytes or 0),
            mimeType=node.mime_type,
            isStarred=bool(node.is_starred),
            isTrash=bool(node.is_trash),
            trashedAt=isoformat(node.trashed_at),
            createdAt=isoformat(node.create_time),
            updatedAt=isoformat(node.update_time),
        )


class BreadcrumbItem(BaseModel):
    id: int
    name: str


class NodeDetailOut(BaseModel):
    node: NodeOut
    breadcrumbs: List[BreadcrumbItem] = Field(default_factory=list)


class StorageUsageOut(BaseModel):
    used: int
    limit: int
    percent: int


class DownloadLinkOut(BaseModel):
    url: str
    name: str


class ZipImportOut(BaseModel):
    createdCount: int


class StarOut(BaseModel):
    id: int
    isStarred: bool


class FolderCreateBody(BaseModel):
    name: str = Field(..., min_length=1)
    parentId: Optional[int] = None


class RenameBody(BaseModel):
    name: str = Field(..., min_length=1)


class MoveBody(BaseModel):
    # null 表示移动到根目录
    parentId: Optional[int] = None


class BulkIdsBody(BaseModel):
    ids: List[int] = Field(default_factory=list)

    @model_validator(mode="after")
    def _dedupe(self) -> "BulkIdsBody":
        self.ids = list(dict.fromkeys(self.ids))
        return self


class BulkStarBody(BulkIdsBody):
    starred: bool = True


NodeResponse = ResponseEnvelope[NodeOut]
NodeListResponse = ResponseEnvelope[List[NodeOut]]
NodeDetailResponse = ResponseEnvelope[NodeDetailOut]
StorageUsageResponse = ResponseEnvelope[StorageUsageOut]
DownloadLinkResponse = ResponseEnvelope[DownloadLinkOut]
ZipImportResponse = ResponseEnvelope[ZipImportOut]
StarResponse = ResponseEnvelope[StarOut]
