"""业务包元数据定义。"""

from __future__ import annotations

from dataclasses import dataclass
from logging import Logger
from typing import Awaitable, Callable, Dict, Optional

from fastapi import APIRouter


async def _noop() -> None:
    return None


@dataclass(frozen=True)
class AppPackage:
    """描述一个业务包暴露给主应用的必要接口。

    ``on_startup`` / ``on_shutdown`` 用于挂载后台任务；``ready_check`` 返回各依赖的探活结果。
    """

    name: str
    api_router: APIRouter
    get_settings: Callable[[], object]
    setup_logging: Callable[[], None]
    logger: Logger
    init_db: Callable[[], None]
    create_response: Callable[..., dict]
    http_exception_handler: Callable[..., object]
    generic_exception_handler: Callable[..., object]
    on_startup: Callable[[], Awaitable[None]] = _noop
    on_shutdown: Callable[[], Awaitable[None]] = _noop
    ready_check: Optional[Callable[[], Dict[str, bool]]] = None
