"""对象存储后端：统一封装本地目录与 S3 的二进制读写。

后端只认不透明的对象 key，不感知文件名与目录层级；元数据由 ``fs_nodes`` 表维护，
两者之间没有事务，写入顺序与补偿由 :mod:`file_service` 负责。
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Optional, Tuple
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.constants import DEFAULT_MIME_TYPE, HTTP_STATUS_BAD_REQUEST
from app.packages.drive.core.exceptions import (
    AppException,
    BlobNotFoundError,
    QuotaExceededError,
    StorageReadError,
    StorageWriteError,
)
from app.packages.drive.core.logger import logger
from app.packages.drive.core.security import create_temporary_token

CHUNK_SIZE = 64 * 1024

# (start, end) 均为闭区间字节偏移，调用方已按文件大小校验
ByteRange = Tuple[int, int]


# ------------------------------------------
# 公共数据结构
# ------------------------------------------


@dataclass
class BlobStream:
    """读取结果：字节迭代器与响应头所需的长度、范围信息。"""

    body: Iterator[bytes]
    content_length: int
    total_size: int
    content_type: Optional[str] = None
    content_range: Optional[str] = None
    _closer: Optional[Callable[[], None]] = field(default=None, repr=False)

    def close(self) -> None:
        if self._closer is not None:
            self._closer()
            self._closer = None


@dataclass
class BlobInfo:
    key: str
    size: int
    last_modified: Optional[datetime]


class TransferLimitExceeded(Exception):
    """上传字节数超过允许上限时由计数读取器抛出，用于中断正在进行的传输。"""


class _CountingReader:
    """包装上传流：统计已读字节，超过 ``max_bytes`` 立即中断读取，不再接收后续数据。

    读取源数据失败（客户端断开、压缩包条目损坏等）时记录在 ``source_error`` 上，
    后端据此区分来源错误与存储传输错误。
    """

    def __init__(self, stream: BinaryIO, max_bytes: Optional[int]) -> None:
        self._stream = stream
        self.max_bytes = max_bytes
        self.count = 0
        self.exceeded = False
        self.source_error: Optional[BaseException] = None

    def read(self, size: int = -1) -> bytes:
        try:
            chunk = self._stream.read(size)
        except Exception as exc:
            self.source_error = exc
            raise
        self.count += len(chunk)
        if self.max_bytes is not None and self.count > self.max_bytes:
            self.exceeded = True
            raise TransferLimitExceeded(f"stream exceeded {self.max_bytes} bytes")
        return chunk


def _content_range(byte_range: ByteRange, total: int) -> str:
    start, end = byte_range
    return f"bytes {start}-{end}/{total}"


class StorageBackend:
    """对象存储接口。"""

    def put(
        self,
        key: str,
        stream: BinaryIO,
        *,
        content_type: Optional[str] = None,
        max_bytes: Optional[int] = None,
    ) -> int:
        """流式写入对象并返回实际写入的字节数。

        任何失败都会先清理残留对象：超过 ``max_bytes`` 时抛出 ``QuotaExceededError``；
        源数据读取失败时原样抛出源异常，由调用方决定如何呈现；其余传输失败抛出 ``StorageWriteError``。
        """
        raise NotImplementedError

    def get_stream(self, key: str, byte_range: Optional[ByteRange] = None) -> BlobStream:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        """删除对象；对象不存在时视为成功，便于重试与补偿。"""
        raise NotImplementedError

    def copy(self, src_key: str, dst_key: str) -> None:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def presign_download(self, key: str, *, ttl: int, filename: Optional[str] = None) -> str:
        raise NotImplementedError

    def health_check(self) -> None:
        """就绪探针：快速失败，不做重试。"""
        raise NotImplementedError

    def list_keys(self, prefix: str = "") -> Iterator[BlobInfo]:
        raise NotImplementedError

    def _cleanup_partial(self, key: str) -> None:
        try:
            self.delete(key)
        except Exception as exc:  # noqa: BLE001 - cleanup is best effort
            logger.error("Failed to clean up partial blob %s: %s", key, exc, exc_info=exc)


# ------------------------------------------
# 本地文件系统实现
# ------------------------------------------


class LocalBackend(StorageBackend):
    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        if not self.root.exists():
            try:
                self.root.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - 极端情况下可能失败
                raise StorageWriteError() from exc

    # 统一的安全路径拼接，防止路径遍历
    def _resolve(self, key: str) -> Path:
        rel_norm = key.strip().lstrip("/")
        candidate = (self.root / rel_norm).resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError as exc:
            raise AppException("非法的对象 key", HTTP_STATUS_BAD_REQUEST) from exc
        return candidate

    def put(self, key, stream, *, content_type=None, max_bytes=None) -> int:
        target = self._resolve(key)
        partial = target.with_name(target.name + ".part")
        reader = _CountingReader(stream, max_bytes)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(partial, "wb") as fh:
                shutil.copyfileobj(reader, fh, CHUNK_SIZE)
            os.replace(partial, target)
        except Exception as exc:
            self._discard_partial_file(partial)
            if reader.exceeded:
                raise QuotaExceededError() from exc
            if reader.source_error is not None:
                raise
            logger.error("Local put failed for %s: %s", key, exc, exc_info=exc)
            raise StorageWriteError() from exc
        return reader.count

    @staticmethod
    def _discard_partial_file(partial: Path) -> None:
        try:
            partial.unlink(missing_ok=True)
        except OSError as exc:
            logger.error("Failed to remove partial file %s: %s", partial, exc, exc_info=exc)

    def get_stream(self, key: str, byte_range: Optional[ByteRange] = None) -> BlobStream:
        target = self._resolve(key)
        if not target.is_file():
            raise BlobNotFoundError()
        try:
            total = target.stat().st_size
            fh = open(target, "rb")
        except OSError as exc:
            logger.error("Local read failed for %s: %s", key, exc, exc_info=exc)
            raise StorageReadError() from exc

        start, end = byte_range if byte_range else (0, total - 1)
        length = max(end - start + 1, 0)

        def _iter() -> Iterator[bytes]:
            try:
                fh.seek(start)
                remaining = length
                while remaining > 0:
                    chunk = fh.read(min(CHUNK_SIZE, remaining))
                    if not chunk:
                        break
                    remaining -= len(chunk)
                    yield chunk
            finally:
                fh.close()

        return BlobStream(
            body=_iter(),
            content_length=length,
            total_size=total,
            content_type=None,
            content_range=_content_range((start, end), total) if byte_range else None,
            _closer=fh.close,
        )

    def delete(self, key: str) -> None:
        target = self._resolve(key)
        try:
            target.unlink(missing_ok=True)
        except OSError as exc:
            logger.error("Local delete failed for %s: %s", key, exc, exc_info=exc)
            raise StorageWriteError() from exc

    def copy(self, src_key: str, dst_key: str) -> None:
        src = self._resolve(src_key)
        dst = self._resolve(dst_key)
        if not src.is_file():
            raise BlobNotFoundError()
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, dst)
        except OSError as exc:
            logger.error("Local copy %s -> %s failed: %s", src_key, dst_key, exc, exc_info=exc)
            raise StorageWriteError() from exc

    def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    def presign_download(self, key: str, *, ttl: int, filename: Optional[str] = None) -> str:
        """LOCAL 没有对象存储直链，签发一个短期令牌交由 ``/files/blob`` 端点校验后输出。"""
        settings = get_settings()
        token = create_temporary_token({"key": key, "name": filename, "scope": "blob"}, expires_seconds=ttl)
        return f"{settings.api_v1_str}/files/blob?t={quote(token)}"

    def health_check(self) -> None:
        if not self.root.is_dir() or not os.access(self.root, os.W_OK):
            raise StorageReadError()

    def list_keys(self, prefix: str = "") -> Iterator[BlobInfo]:
        base = self._resolve(prefix) if prefix else self.root
        if not base.exists():
            return
        for path in base.rglob("*"):
            if not path.is_file() or path.name.endswith(".part"):
                continue
            stat = path.stat()
            yield BlobInfo(
                key=path.relative_to(self.root).as_posix(),
                size=int(stat.st_size),
                last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            )


# ------------------------------------------
# S3 实现（boto3）
# ------------------------------------------


def _is_missing(exc: ClientError) -> bool:
    error = exc.response.get("Error", {})
    return str(error.get("Code")) in {"404", "NoSuchKey", "NotFound"}


class S3Backend(StorageBackend):
    def __init__(
        self,
        *,
        bucket: str,
        region: str,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        prefix: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        connect_timeout: int = 5,
        read_timeout: int = 60,
        client=None,
    ):
        self.bucket = bucket
        self.region = region
        self.prefix = (prefix or "").strip("/")
        if client is None:
            kwargs = {
                "region_name": region,
                # 单次尝试：失败交给上层补偿，不在 SDK 内部静默重试
                "config": Config(
                    connect_timeout=connect_timeout,
                    read_timeout=read_timeout,
                    retries={"total_max_attempts": 1, "mode": "standard"},
                ),
            }
            if endpoint_url:
                kwargs["endpoint_url"] = endpoint_url
            if access_key_id and secret_access_key:
                kwargs["aws_access_key_id"] = access_key_id
                kwargs["aws_secret_access_key"] = secret_access_key
            client = boto3.client("s3", **kwargs)
        self._client = client

    # 拼接基于 path_prefix 的对象 key
    def _join_key(self, key: str) -> str:
        key_norm = key.lstrip("/")
        if self.prefix:
            return f"{self.prefix}/{key_norm}"
        return key_norm

    def _strip_prefix(self, full_key: str) -> str:
        if self.prefix and full_key.startswith(self.prefix + "/"):
            return full_key[len(self.prefix) + 1 :]
        return full_key

    def put(self, key, stream, *, content_type=None, max_bytes=None) -> int:
        full_key = self._join_key(key)
        reader = _CountingReader(stream, max_bytes)
        try:
            self._client.upload_fileobj(
                reader,
                self.bucket,
                full_key,
                ExtraArgs={"ContentType": content_type or DEFAULT_MIME_TYPE},
            )
        except Exception as exc:  # noqa: BLE001 - s3transfer may wrap the reader error
            self._cleanup_partial(key)
            if reader.exceeded:
                raise QuotaExceededError() from exc
            if reader.source_error is not None:
                raise reader.source_error
            logger.error("S3 put failed for %s: %s", full_key, exc, exc_info=exc)
            raise StorageWriteError() from exc
        return reader.count

    def get_stream(self, key: str, byte_range: Optional[ByteRange] = None) -> BlobStream:
        params = {"Bucket": self.bucket, "Key": self._join_key(key)}
        if byte_range:
            params["Range"] = f"bytes={byte_range[0]}-{byte_range[1]}"
        try:
            resp = self._client.get_object(**params)
        except ClientError as exc:
            if _is_missing(exc):
                raise BlobNotFoundError() from exc
            logger.error("S3 get failed for %s: %s", key, exc, exc_info=exc)
            raise StorageReadError() from exc
        except BotoCoreError as exc:
            logger.error("S3 get failed for %s: %s", key, exc, exc_info=exc)
            raise StorageReadError() from exc

        body = resp["Body"]
        length = int(resp.get("ContentLength") or 0)
        content_range = resp.get("ContentRange")
        total = length
        if content_range and "/" in content_range:
            total_part = content_range.rsplit("/", 1)[1]
            if total_part.isdigit():
                total = int(total_part)

        def _iter() -> Iterator[bytes]:
            try:
                for chunk in body.iter_chunks(CHUNK_SIZE):
                    yield chunk
            except BotoCoreError as exc:
                logger.error("S3 stream interrupted for %s: %s", key, exc, exc_info=exc)
                raise StorageReadError() from exc
            finally:
                body.close()

        return BlobStream(
            body=_iter(),
            content_length=length,
            total_size=total,
            content_type=resp.get("ContentType"),
            content_range=content_range if byte_range else None,
            _closer=body.close,
        )

    def delete(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=self._join_key(key))
        except (ClientError, BotoCoreError) as exc:
            logger.error("S3 delete failed for %s: %s", key, exc, exc_info=exc)
            raise StorageWriteError() from exc

    def copy(self, src_key: str, dst_key: str) -> None:
        try:
            self._client.copy_object(
                Bucket=self.bucket,
                Key=self._join_key(dst_key),
                CopySource={"Bucket": self.bucket, "Key": self._join_key(src_key)},
            )
        except ClientError as exc:
            if _is_missing(exc):
                raise BlobNotFoundError() from exc
            logger.error("S3 copy %s -> %s failed: %s", src_key, dst_key, exc, exc_info=exc)
            raise StorageWriteError() from exc
        except BotoCoreError as exc:
            logger.error("S3 copy %s -> %s failed: %s", src_key, dst_key, exc, exc_info=exc)
            raise StorageWriteError() from exc

    def exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=self._join_key(key))
            return True
        except ClientError as exc:
            if _is_missing(exc):
                return False
            raise StorageReadError() from exc
        except BotoCoreError as exc:
            raise StorageReadError() from exc

    def presign_download(self, key: str, *, ttl: int, filename: Optional[str] = None) -> str:
        params = {"Bucket": self.bucket, "Key": self._join_key(key)}
        if filename:
            params["ResponseContentDisposition"] = f"attachment; filename*=UTF-8''{quote(filename)}"
        try:
            return self._client.generate_presigned_url("get_object", Params=params, ExpiresIn=ttl)
        except (ClientError, BotoCoreError) as exc:
            logger.error("Presign failed for %s: %s", key, exc, exc_info=exc)
            raise StorageReadError() from exc

    def health_check(self) -> None:
        try:
            self._client.head_bucket(Bucket=self.bucket)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("S3 health check failed for bucket %s: %s", self.bucket, exc)
            raise StorageReadError() from exc

    def list_keys(self, prefix: str = "") -> Iterator[BlobInfo]:
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=self._join_key(prefix)):
                for obj in page.get("Contents", []):
                    key = obj.get("Key")
                    if not key or key.endswith("/"):
                        continue
                    yield BlobInfo(
                        key=self._strip_prefix(key),
                        size=int(obj.get("Size") or 0),
                        last_modified=obj.get("LastModified"),
                    )
        except (ClientError, BotoCoreError) as exc:
            logger.error("S3 list failed for prefix %s: %s", prefix, exc, exc_info=exc)
            raise StorageReadError() from exc


def build_backend(
    *,
    type: str,
    region: Optional[str] = None,
    bucket_name: Optional[str] = None,
    path_prefix: Optional[str] = None,
    local_root_path: Optional[str | Path] = None,
    access_key_id: Optional[str] = None,
    secret_access_key: Optional[str] = None,
    endpoint_url: Optional[str] = None,
    connect_timeout: int = 5,
    read_timeout: int = 60,
) -> StorageBackend:
    t = (type or "").upper()
    if t == "LOCAL":
        if not local_root_path:
            raise AppException("缺少本地根目录配置", HTTP_STATUS_BAD_REQUEST)
        return LocalBackend(local_root_path)
    if t == "S3":
        if not (region and bucket_name):
            raise AppException("S3 配置不完整", HTTP_STATUS_BAD_REQUEST)
        return S3Backend(
            bucket=bucket_name,
            region=region,
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            prefix=path_prefix,
            endpoint_url=endpoint_url,
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
        )
    raise AppException("不支持的存储类型", HTTP_STATUS_BAD_REQUEST)


_backend: Optional[StorageBackend] = None


def get_storage_backend() -> StorageBackend:
    """按配置惰性构建进程内唯一的存储后端。"""
    global _backend
    if _backend is None:
        settings = get_settings()
        _backend = build_backend(
            type=settings.storage_type,
            region=settings.s3_region,
            bucket_name=settings.s3_bucket_name,
            path_prefix=settings.s3_path_prefix,
            local_root_path=settings.local_storage_path,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
            endpoint_url=settings.s3_endpoint_url,
            connect_timeout=settings.storage_connect_timeout,
            read_timeout=settings.storage_read_timeout,
        )
        logger.info("Object storage backend ready: %s", type(_backend).__name__)
    return _backend


def set_storage_backend(backend: Optional[StorageBackend]) -> None:
    """替换当前后端（测试注入或重新加载配置时使用）。"""
    global _backend
    _backend = backend
