"""模型包初始化，便于统一导入 ORM 实体并触发模型注册。"""

from app.packages.drive.models.fs_node import FsNode
from app.packages.drive.models.user import User

__all__ = [
    "FsNode",
    "User",
]
