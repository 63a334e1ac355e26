"""常量定义：集中维护 HTTP 状态码与网盘领域的固定取值。"""

from fastapi import status

HTTP_STATUS_OK = status.HTTP_200_OK
HTTP_STATUS_CREATED = status.HTTP_201_CREATED
HTTP_STATUS_PARTIAL_CONTENT = status.HTTP_206_PARTIAL_CONTENT
HTTP_STATUS_BAD_REQUEST = status.HTTP_400_BAD_REQUEST
HTTP_STATUS_UNAUTHORIZED = status.HTTP_401_UNAUTHORIZED
HTTP_STATUS_FORBIDDEN = status.HTTP_403_FORBIDDEN
HTTP_STATUS_NOT_FOUND = status.HTTP_404_NOT_FOUND
HTTP_STATUS_CONFLICT = status.HTTP_409_CONFLICT
HTTP_STATUS_PAYLOAD_TOO_LARGE = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
HTTP_STATUS_RANGE_NOT_SATISFIABLE = status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE
HTTP_STATUS_INTERNAL_ERROR = status.HTTP_500_INTERNAL_SERVER_ERROR
HTTP_STATUS_BAD_GATEWAY = status.HTTP_502_BAD_GATEWAY

ACCESS_TOKEN_TYPE = "bearer"

NODE_TYPE_FILE = "file"
NODE_TYPE_FOLDER = "folder"

LIST_FILTER_ALL = "all"
LIST_FILTER_STARRED = "starred"
LIST_FILTER_TRASH = "trash"

DEFAULT_STORAGE_LIMIT = 5 * 1024 * 1024 * 1024  # 5 GiB
DEFAULT_TRASH_RETENTION_DAYS = 30

MAX_NODE_NAME_LENGTH = 255
DEFAULT_MIME_TYPE = "application/octet-stream"

# 对象 key 统一前缀，后接用户 ID 与随机标识；与文件名、目录层级无关
STORAGE_KEY_ROOT = "users"

REAPER_LOCK_NAME = "drive:trash-reaper"
