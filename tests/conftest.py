"""测试夹具：为 pytest 提供数据库、内存存储与客户端的共享配置。"""

import asyncio
import os
from typing import Generator

# 必须在导入应用之前设置，保证缓存的配置使用内存存储与 SQLite
os.environ.setdefault("STORE_TYPE", "MEMORY")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, delete
from sqlalchemy.orm import Session, sessionmaker

from app.main import app
from app.packages.drive.core.config import get_settings
from app.packages.drive.core.dependencies import get_db
from app.packages.drive.db import session as db_session
from app.packages.drive.models.base import Base
from app.packages.drive.models.file_node import FileNode
from app.packages.drive.services.archive_service import ArchiveService
from app.packages.drive.services.file_service import FileService
from app.packages.drive.services.search_service import SearchService
from app.packages.drive.services.store_backends import MemoryStore
from app.packages.drive.services.tree_service import TreeService

TEST_DB_PATH = os.path.join(os.path.dirname(__file__), "test.db")
TEST_DATABASE_URL = f"sqlite:///{TEST_DB_PATH}"

OWNER_ID = 1


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
    yield

    engine.dispose()
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)


@pytest.fixture(autouse=True)
def clean_mirror() -> Generator[None, None, None]:
    """每个用例前清空镜像表，避免用例之间互相影响。"""
    with db_session.SessionLocal() as session:
        session.execute(delete(FileNode))
        session.commit()
    yield


@pytest.fixture()
def db_session_fixture() -> Generator[Session, None, None]:
    """提供给测试用例使用的数据库会话。"""
    session = db_session.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def settings():
    return get_settings()


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore(chunk_size=1024)


@pytest.fixture()
def tree_service(db_session_fixture, store, settings) -> TreeService:
    return TreeService(db_session_fixture, store, settings=settings)


@pytest.fixture()
def file_service(db_session_fixture, store, settings) -> FileService:
    return FileService(db_session_fixture, store, settings=settings)


@pytest.fixture()
def search_service(db_session_fixture, store, settings) -> SearchService:
    return SearchService(db_session_fixture, store, settings=settings)


@pytest.fixture()
def archive_service(store, settings) -> ArchiveService:
    return ArchiveService(store, settings=settings)


@pytest.fixture()
def client(db_session_fixture, store):
    """构建 FastAPI TestClient，并注入测试专用的数据库依赖与内存存储。"""
    def override_get_db() -> Generator[Session, None, None]:
        session = db_session.SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        asyncio.run(store.mkdir(f"/users/{OWNER_ID}", parents=True))
        app.state.store = store
        yield test_client

    app.dependency_overrides.clear()
