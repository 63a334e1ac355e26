"""进程内事件总线：文件生命周期的旁路副作用（通知、指标、审计）通过事件发出。

订阅者在独立的工作线程中执行，失败只记录日志，不会影响已经提交的主操作。
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, DefaultDict, Dict, List, Optional

from app.packages.drive.core.logger import get_request_id
from app.packages.drive.core.timezone import utcnow

logger = logging.getLogger(__name__)

FILE_UPLOADED = "file.uploaded"
FOLDER_CREATED = "folder.created"
NODE_RENAMED = "node.renamed"
NODE_MOVED = "node.moved"
NODE_TRASHED = "node.trashed"
NODE_RESTORED = "node.restored"
NODE_DELETED = "node.deleted"
ZIP_IMPORTED = "zip.imported"
TRASH_SWEPT = "trash.swept"
BLOB_ORPHANED = "blob.orphaned"


@dataclass
class Event:
    name: str
    user_id: Optional[int]
    payload: Dict[str, Any] = field(default_factory=dict)
    request_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)


Handler = Callable[[Event], None]


class EventBus:
    def __init__(self, executor: Optional[Executor] = None) -> None:
        # executor 为 None 时同步分发（测试使用）
        self._executor = executor
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)
        self._wildcard: List[Handler] = []
        self._lock = threading.Lock()

    def subscribe(self, name: str, handler: Handler) -> None:
        with self._lock:
            if name == "*":
                self._wildcard.append(handler)
            else:
                self._handlers[name].append(handler)

    def unsubscribe(self, name: str, handler: Handler) -> None:
        with self._lock:
            bucket = self._wildcard if name == "*" else self._handlers.get(name, [])
            if handler in bucket:
                bucket.remove(handler)

    def emit(self, name: str, /, *, user_id: Optional[int] = None, **payload: Any) -> Event:
        event = Event(name=name, user_id=user_id, payload=payload, request_id=get_request_id())
        with self._lock:
            handlers = [*self._handlers.get(name, []), *self._wildcard]
        for handler in handlers:
            if self._executor is None:
                self._dispatch(handler, event)
            else:
                try:
                    self._executor.submit(self._dispatch, handler, event)
                except RuntimeError as exc:  # executor already shut down
                    logger.warning("Dropped event %s: %s", event.name, exc)
        return event

    @staticmethod
    def _dispatch(handler: Handler, event: Event) -> None:
        try:
            handler(event)
        except Exception as exc:  # noqa: BLE001 - side effects never fail the caller
            logger.error("Event handler %r failed for %s: %s", handler, event.name, exc, exc_info=exc)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


def log_event(event: Event) -> None:
    logger.info(
        "event=%s user=%s payload=%s",
        event.name,
        event.user_id,
        event.payload,
        extra={
            "event": event.name,
            "user_id": event.user_id,
            "node_id": event.payload.get("node_id"),
            "storage_key": event.payload.get("key"),
            "request_id": event.request_id,
        },
    )


event_bus = EventBus(ThreadPoolExecutor(max_workers=1, thread_name_prefix="drive-events"))
event_bus.subscribe("*", log_event)
