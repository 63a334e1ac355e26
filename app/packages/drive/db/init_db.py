"""Database bootstrapping utilities."""

from __future__ import annotations

import logging

from app.packages.drive.db import session as db_session
from app.packages.drive.models.base import Base
from app.packages.drive.models.fs_node import FsNode  # noqa: F401 - ensure table creation
from app.packages.drive.models.user import User  # noqa: F401 - ensure table creation

logger = logging.getLogger(__name__)


def init_db() -> None:
    """Create all database tables if they do not exist.

    用户数据由外部认证服务写入，这里不做任何种子数据初始化。
    """
    Base.metadata.create_all(bind=db_session.engine)
    logger.info("Metadata tables ready on %s", db_session.engine.url.render_as_string(hide_password=True))
