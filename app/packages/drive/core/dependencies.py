"""依赖注入模块：封装 FastAPI 中复用度高的依赖函数。"""

from collections.abc import Generator
from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.constants import OWNER_HEADER
from app.packages.drive.core.exceptions import InvalidPathError, StoreUnavailableError
from app.packages.drive.core.locks import TreeLockManager
from app.packages.drive.db import session as db_session
from app.packages.drive.services.file_service import FileService
from app.packages.drive.services.retrieval_service import RetrievalService
from app.packages.drive.services.search_service import SearchService
from app.packages.drive.services.store_backends import ContentStore
from app.packages.drive.services.tree_service import TreeService

settings = get_settings()


def get_db() -> Generator[Session, None, None]:
    """生成一个数据库会话，并在请求结束后自动关闭。"""
    db = db_session.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_owner_id(x_owner_id: Optional[str] = Header(None, alias=OWNER_HEADER)) -> int:
    """当前 owner：优先取请求头，缺省为配置的默认 owner。"""
    if x_owner_id is None or not x_owner_id.strip():
        return int(settings.default_owner_id)
    try:
        owner_id = int(x_owner_id)
    except ValueError as exc:
        raise InvalidPathError("owner 标识不合法", details={"ownerId": x_owner_id}) from exc
    if owner_id <= 0:
        raise InvalidPathError("owner 标识不合法", details={"ownerId": x_owner_id})
    return owner_id


def get_store(request: Request) -> ContentStore:
    """应用启动时创建的存储适配器（挂在 app.state 上，随应用关闭释放）。"""
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise StoreUnavailableError("内容存储尚未初始化")
    return store


def get_lock_manager(request: Request) -> TreeLockManager:
    locks = getattr(request.app.state, "tree_locks", None)
    if locks is None:
        locks = request.app.state.tree_locks = TreeLockManager(enabled=settings.tree_locks_enabled)
    return locks


def get_tree_service(
    db: Session = Depends(get_db),
    store: ContentStore = Depends(get_store),
    locks: TreeLockManager = Depends(get_lock_manager),
) -> TreeService:
    return TreeService(db, store, settings=settings, locks=locks)


def get_file_service(
    db: Session = Depends(get_db),
    store: ContentStore = Depends(get_store),
    locks: TreeLockManager = Depends(get_lock_manager),
) -> FileService:
    return FileService(db, store, settings=settings, locks=locks)


def get_search_service(
    db: Session = Depends(get_db),
    store: ContentStore = Depends(get_store),
    locks: TreeLockManager = Depends(get_lock_manager),
) -> SearchService:
    return SearchService(db, store, settings=settings, locks=locks)


def get_retrieval_service(store: ContentStore = Depends(get_store)) -> RetrievalService:
    return RetrievalService(store, settings=settings)
