"""测试夹具：为 pytest 提供数据库、对象存储与客户端的共享配置。

环境变量必须在导入应用模块之前设置：配置对象与数据库引擎在导入时即完成初始化。
"""

import os
import tempfile
import uuid
from typing import Callable, Generator

_TMP_ROOT = tempfile.mkdtemp(prefix="krypton-drive-tests-")
TEST_DB_PATH = os.path.join(_TMP_ROOT, "test.db")
TEST_DATABASE_URL = f"sqlite:///{TEST_DB_PATH}"

os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["STORAGE_TYPE"] = "LOCAL"
os.environ["LOCAL_STORAGE_ROOT"] = os.path.join(_TMP_ROOT, "blobs")
os.environ["LOG_DIR"] = os.path.join(_TMP_ROOT, "log")
os.environ["TRASH_REAPER_ENABLED"] = "false"
os.environ["JWT_SECRET_KEY"] = "krypton-drive-test-secret"
os.environ["METADATA_TRANSACTIONS"] = "true"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine, delete  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from app.main import app  # noqa: E402
from app.packages.drive.core.dependencies import get_db  # noqa: E402
from app.packages.drive.core.locks import InMemoryLockBackend, set_lock_backend  # noqa: E402
from app.packages.drive.core.security import create_access_token  # noqa: E402
from app.packages.drive.db import session as db_session  # noqa: E402
from app.packages.drive.models.base import Base  # noqa: E402
from app.packages.drive.models.fs_node import FsNode  # noqa: E402
from app.packages.drive.models.user import User  # noqa: E402
from app.packages.drive.services.event_bus import event_bus  # noqa: E402
from app.packages.drive.services.storage_backends import LocalBackend, set_storage_backend  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def setup_test_database() -> Generator[None, None, None]:
    """创建隔离的 SQLite 测试数据库，并在会话结束后清理。"""
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)

    engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db_session.engine = engine
    db_session.SessionLocal = TestingSessionLocal

    Base.metadata.create_all(bind=engine)
    # 事件同步分发，断言时无需等待后台线程
    event_bus.shutdown(wait=True)
    event_bus._executor = None
    set_lock_backend(InMemoryLockBackend())
    yield

    engine.dispose()
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)


@pytest.fixture(autouse=True)
def clean_tables() -> Generator[None, None, None]:
    yield
    with db_session.SessionLocal() as session:
        session.execute(delete(FsNode))
        session.execute(delete(User))
        session.commit()


@pytest.fixture(autouse=True)
def blob_store(tmp_path) -> Generator[LocalBackend, None, None]:
    """每个用例使用独立的 LOCAL 存储目录。"""
    backend = LocalBackend(tmp_path / "blobs")
    set_storage_backend(backend)
    yield backend
    set_storage_backend(None)


@pytest.fixture()
def db_session_fixture() -> Generator[Session, None, None]:
    """提供给测试用例使用的数据库会话。"""
    session = db_session.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_user(db_session_fixture: Session) -> Callable[..., User]:
    def _make(
        *,
        storage_limit: int = 10 * 1024 * 1024,
        trash_retention_days: int = 30,
        is_active: bool = True,
    ) -> User:
        suffix = uuid.uuid4().hex[:8]
        user = User(
            username=f"user-{suffix}",
            email=f"{suffix}@example.com",
            is_active=is_active,
            storage_used=0,
            storage_limit=storage_limit,
            trash_retention_days=trash_retention_days,
        )
        db_session_fixture.add(user)
        db_session_fixture.commit()
        db_session_fixture.refresh(user)
        return user

    return _make


@pytest.fixture()
def user(make_user) -> User:
    return make_user()


def _auth_headers_for(user: User) -> dict[str, str]:
    token = create_access_token({"user_id": user.id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def headers_for() -> Callable[[User], dict[str, str]]:
    """为任意用户签发访问令牌并返回请求头。"""
    return _auth_headers_for


@pytest.fixture()
def auth_headers(user: User) -> dict[str, str]:
    return _auth_headers_for(user)


@pytest.fixture()
def client(db_session_fixture):
    """构建 FastAPI TestClient，并注入测试专用的数据库依赖。"""
    def override_get_db() -> Generator[Session, None, None]:
        session = db_session.SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
