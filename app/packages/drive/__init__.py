"""网盘业务包：文件树、对象存储、配额与回收站生命周期。"""

from app.packages.types import AppPackage

from .api.v1 import api_router
from .core.config import get_settings
from .core.exceptions import generic_exception_handler, http_exception_handler
from .core.logger import logger, setup_logging
from .core.responses import create_response
from .db.init_db import init_db
from .lifecycle import on_shutdown, on_startup, ready_check

package = AppPackage(
    name="drive",
    api_router=api_router,
    get_settings=get_settings,
    setup_logging=setup_logging,
    logger=logger,
    init_db=init_db,
    create_response=create_response,
    http_exception_handler=http_exception_handler,
    generic_exception_handler=generic_exception_handler,
    on_startup=on_startup,
    on_shutdown=on_shutdown,
    ready_check=ready_check,
)

__all__ = ["package", "api_router", "get_settings"]
