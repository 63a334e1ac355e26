"""异常处理模块：定义统一的业务异常与响应格式。

网盘领域的错误按可预期程度分两类：
- 结构性错误（节点不存在、重名、循环移动、配额不足）在任何副作用之前抛出，携带明确原因；
- 存储层错误（对象存储读写失败）只向调用方返回通用提示，详细原因写入日志。
"""

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from app.packages.drive.core.constants import (
    HTTP_STATUS_BAD_GATEWAY,
    HTTP_STATUS_BAD_REQUEST,
    HTTP_STATUS_CONFLICT,
    HTTP_STATUS_FORBIDDEN,
    HTTP_STATUS_INTERNAL_ERROR,
    HTTP_STATUS_NOT_FOUND,
    HTTP_STATUS_RANGE_NOT_SATISFIABLE,
)


class AppException(HTTPException):
    """携带统一响应结构的业务异常，方便在全局处理中转换响应体。"""

    def __init__(self, msg: str, code: int = HTTP_STATUS_BAD_REQUEST, data=None) -> None:
        super().__init__(status_code=code, detail=msg)
        self.data = data


class NotFoundError(AppException):
    """节点或父目录不存在，或不属于当前用户。"""

    def __init__(self, msg: str = "文件或文件夹不存在") -> None:
        super().__init__(msg, HTTP_STATUS_NOT_FOUND)


class ParentNotFoundError(NotFoundError):
    def __init__(self, msg: str = "目标文件夹不存在") -> None:
        super().__init__(msg)


class NameConflictError(AppException):
    def __init__(self, msg: str = "同一位置已存在同名文件或文件夹") -> None:
        super().__init__(msg, HTTP_STATUS_CONFLICT)


class CycleError(AppException):
    def __init__(self, msg: str = "不能将文件夹移动到其自身或子目录中") -> None:
        super().__init__(msg, HTTP_STATUS_BAD_REQUEST)


class InvalidNameError(AppException):
    def __init__(self, msg: str = "名称不合法") -> None:
        super().__init__(msg, HTTP_STATUS_BAD_REQUEST)


class QuotaExceededError(AppException):
    def __init__(self, msg: str = "存储空间不足：已超出配额", data=None) -> None:
        super().__init__(msg, HTTP_STATUS_FORBIDDEN, data)


class StorageError(AppException):
    """对象存储传输失败的基类，对外只暴露通用提示。"""

    def __init__(self, msg: str = "存储服务暂时不可用，请稍后重试") -> None:
        super().__init__(msg, HTTP_STATUS_BAD_GATEWAY)


class StorageWriteError(StorageError):
    pass


class StorageReadError(StorageError):
    pass


class BlobNotFoundError(NotFoundError):
    def __init__(self, msg: str = "文件内容不存在") -> None:
        super().__init__(msg)


class RangeNotSatisfiableError(AppException):
    def __init__(self, total_size: int) -> None:
        super().__init__("请求的字节范围无效", HTTP_STATUS_RANGE_NOT_SATISFIABLE)
        self.headers = {"Content-Range": f"bytes */{total_size}"}


class UploadFailedError(AppException):
    def __init__(self, msg: str = "上传失败：服务器错误") -> None:
        super().__init__(msg, HTTP_STATUS_INTERNAL_ERROR)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:  # pragma: no cover - framework glue
    """将 FastAPI 的 ``HTTPException`` 转换为统一响应格式。"""
    payload = {"msg": exc.detail, "data": getattr(exc, "data", None), "code": exc.status_code}
    return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # pragma: no cover - framework glue
    """兜底处理：将未捕获异常转换为标准的 500 响应结构。"""
    from app.packages.drive.core.logger import logger

    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    payload = {
        "msg": "服务器内部错误",
        "data": None,
        "code": HTTP_STATUS_INTERNAL_ERROR,
    }
    return JSONResponse(status_code=HTTP_STATUS_INTERNAL_ERROR, content=payload)
