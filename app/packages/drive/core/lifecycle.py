"""应用生命周期：启动时初始化镜像库与存储适配器，关闭时释放连接。"""

from __future__ import annotations

from fastapi import FastAPI

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.exceptions import DriveError
from app.packages.drive.core.locks import TreeLockManager
from app.packages.drive.core.logger import logger
from app.packages.drive.db.init_db import init_db
from app.packages.drive.services.store_backends import build_store
from app.packages.drive.utils.path_utils import owner_root


async def startup(app: FastAPI) -> None:
    settings = get_settings()
    init_db()
    store = build_store(
        type=settings.store_type,
        api_url=settings.store_api_url,
        timeout=settings.store_timeout_seconds,
        chunk_size=settings.stream_chunk_size,
    )
    app.state.store = store
    app.state.tree_locks = TreeLockManager(enabled=settings.tree_locks_enabled)
    root = owner_root(settings.default_owner_id, settings.users_root)
    try:
        await store.mkdir(root, parents=True)
    except DriveError as exc:
        # 存储暂不可用时仍允许启动；创建类操作会再次确保根目录
        logger.warning("Failed to ensure default owner root %s on startup: %s", root, exc.detail)
    logger.info("Content store ready type=%s default_root=%s", settings.store_type, root)


async def shutdown(app: FastAPI) -> None:
    store = getattr(app.state, "store", None)
    if store is not None:
        await store.aclose()
        app.state.store = None
