"""搜索合并：并发遍历存储目录树与查询镜像库，按路径去重并标注来源后统一排序。"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.packages.drive.core.config import Settings, get_settings
from app.packages.drive.core.enums import NodeTypeFilter, ResultSource
from app.packages.drive.core.exceptions import (
    DriveError,
    InvalidPathError,
    NotFoundError,
)
from app.packages.drive.core.locks import TreeLockManager
from app.packages.drive.core.logger import logger
from app.packages.drive.core.timezone import isoformat
from app.packages.drive.crud.base import translate_db_errors
from app.packages.drive.crud.file_node import file_node_crud
from app.packages.drive.models.file_node import FileNode
from app.packages.drive.services.store_backends import ContentStore
from app.packages.drive.utils.path_utils import depth_from, join_path, resolve_owner_path


def _type_matches(is_folder: bool, type_filter: NodeTypeFilter) -> bool:
    if type_filter == NodeTypeFilter.FILE:
        return not is_folder
    if type_filter == NodeTypeFilter.FOLDER:
        return is_folder
    return True


class SearchService:
    def __init__(
        self,
        db: Session,
        store: ContentStore,
        *,
        settings: Optional[Settings] = None,
        locks: Optional[TreeLockManager] = None,
    ) -> None:
        self.db = db
        self.store = store
        self.settings = settings or get_settings()
        self.locks = locks or TreeLockManager(enabled=False)

    async def search(
        self,
        owner_id: int,
        scope: Optional[str],
        query: Optional[str],
        *,
        recursive: bool = True,
        type_filter: NodeTypeFilter = NodeTypeFilter.ALL,
    ) -> Dict[str, Any]:
        needle = (query or "").strip()
        if not needle:
            raise InvalidPathError("搜索关键字不能为空")
        scope_path = resolve_owner_path(owner_id, scope, self.settings.users_root)
        scope_stat = await self.store.exists(scope_path)
        if scope_stat is None:
            raise NotFoundError("搜索范围不存在", details={"path": scope_path})
        if not scope_stat.is_folder:
            raise InvalidPathError("搜索范围必须是文件夹", details={"path": scope_path})

        async with self.locks.shared(owner_id):
            store_hits, mirror_rows = await asyncio.gather(
                self._walk_store(scope_path, needle, recursive, type_filter),
                run_in_threadpool(self._query_mirror, owner_id, scope_path, needle, recursive, type_filter),
            )

        items = self._merge(scope_path, store_hits, mirror_rows)
        lowered = needle.casefold()
        items.sort(
            key=lambda item: (
                0 if item["name"].casefold() == lowered else 1,
                item["depth"],
                item["name"].casefold(),
                item["name"],
            )
        )
        logger.info(
            "Search owner=%s scope=%s query=%r recursive=%s results=%s",
            owner_id,
            scope_path,
            needle,
            recursive,
            len(items),
        )
        return {"items": items, "total": len(items)}

    async def _walk_store(
        self,
        scope: str,
        needle: str,
        recursive: bool,
        type_filter: NodeTypeFilter,
    ) -> Dict[str, Dict[str, Any]]:
        lowered = needle.casefold()
        max_depth = int(self.settings.tree_max_depth)
        hits: Dict[str, Dict[str, Any]] = {}
        stack: List[tuple[str, int]] = [(scope, 1)]
        visited: set[str] = set()
        while stack:
            current, depth = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            try:
                entries = [entry async for entry in self.store.list(current)]
            except DriveError as exc:
                if current == scope:
                    raise
                logger.warning("Search skipped inaccessible folder %s: %s", current, exc.detail)
                continue
            for entry in entries:
                path = join_path(current, entry.name)
                if lowered in entry.name.casefold() and _type_matches(entry.is_folder, type_filter):
                    hits[path] = {
                        "name": entry.name,
                        "path": path,
                        "isFolder": entry.is_folder,
                        "hash": entry.hash,
                        "size": 0 if entry.is_folder else entry.size,
                        "depth": depth,
                    }
                if recursive and entry.is_folder:
                    if depth >= max_depth:
                        logger.warning("Search depth limit reached at %s", path)
                        continue
                    stack.append((path, depth + 1))
        return hits

    def _query_mirror(
        self,
        owner_id: int,
        scope: str,
        needle: str,
        recursive: bool,
        type_filter: NodeTypeFilter,
    ) -> List[FileNode]:
        with translate_db_errors("search"):
            return file_node_crud.search_names(
                self.db,
                owner_id=owner_id,
                query=needle,
                scope=scope,
                recursive=recursive,
                type_filter=type_filter,
            )

    def _merge(
        self,
        scope: str,
        store_hits: Dict[str, Dict[str, Any]],
        mirror_rows: List[FileNode],
    ) -> List[Dict[str, Any]]:
        merged: Dict[str, Dict[str, Any]] = {}
        for path, hit in store_hits.items():
            merged[path] = {
                **hit,
                "id": None,
                "mimeType": None,
                "createTime": None,
                "source": ResultSource.STORE_ONLY.value,
            }
        for row in mirror_rows:
            enrichment = {
                "id": row.id,
                "mimeType": row.mime_type,
                "createTime": isoformat(row.create_time),
            }
            existing = merged.get(row.path)
            if existing is not None:
                existing.update(enrichment)
                if not existing["isFolder"]:
                    existing["size"] = int(row.size_bytes or existing["size"])
                existing["source"] = ResultSource.BOTH.value
                continue
            merged[row.path] = {
                "name": row.name,
                "path": row.path,
                "isFolder": bool(row.is_folder),
                "hash": row.content_hash,
                "size": int(row.size_bytes or 0),
                "depth": depth_from(row.path, scope),
                **enrichment,
                "source": ResultSource.MIRROR_ONLY.value,
            }
        return list(merged.values())
