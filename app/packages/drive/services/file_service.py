"""读取侧业务：目录列表（存储与镜像库合并）、节点详情与下载分发。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.packages.drive.core.config import Settings, get_settings
from app.packages.drive.core.constants import ZIP_MEDIA_TYPE
from app.packages.drive.core.enums import ResultSource
from app.packages.drive.core.exceptions import InvalidPathError, NotFoundError
from app.packages.drive.core.locks import TreeLockManager
from app.packages.drive.core.timezone import isoformat
from app.packages.drive.crud.base import translate_db_errors
from app.packages.drive.crud.file_node import file_node_crud
from app.packages.drive.models.file_node import FileNode
from app.packages.drive.services.archive_service import ArchiveService
from app.packages.drive.services.store_backends import ContentStore, StoreStat
from app.packages.drive.services.tree_service import serialize_node
from app.packages.drive.utils.mime import guess_from_name, sniff
from app.packages.drive.utils.path_utils import join_path, resolve_owner_path, split_path


@dataclass
class DownloadStream:
    filename: str
    media_type: str
    chunks: AsyncIterator[bytes]


async def _prepend(first: bytes, rest: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    try:
        if first:
            yield first
        async for chunk in rest:
            yield chunk
    finally:
        await rest.aclose()


class FileService:
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

    def _resolve(self, owner_id: int, raw: Optional[str]) -> str:
        return resolve_owner_path(owner_id, raw, self.settings.users_root)

    def _node(self, owner_id: int, path: str, operation: str) -> Optional[FileNode]:
        with translate_db_errors(operation):
            return file_node_crud.get_by_path(self.db, owner_id=owner_id, path=path)

    def _children(self, owner_id: int, folder: str) -> List[FileNode]:
        with translate_db_errors("list"):
            return file_node_crud.children(self.db, owner_id=owner_id, parent_path=folder)

    def _node_with_count(
        self, owner_id: int, path: str, stat: Optional[StoreStat]
    ) -> Tuple[Optional[FileNode], int]:
        with translate_db_errors("info"):
            row = file_node_crud.get_by_path(self.db, owner_id=owner_id, path=path)
            is_folder = stat.is_folder if stat is not None else bool(row is not None and row.is_folder)
            if not is_folder:
                return row, 0
            return row, file_node_crud.count_descendants(self.db, owner_id=owner_id, path=path)

    async def list_children(self, owner_id: int, path: Optional[str]) -> Dict[str, Any]:
        """列出直接子项：以存储为准，镜像库补充元数据，双方不一致的条目标注来源。"""
        folder = self._resolve(owner_id, path)
        stat = await self.store.exists(folder)
        if stat is None:
            raise NotFoundError("文件夹不存在", details={"path": folder})
        if not stat.is_folder:
            raise InvalidPathError("目标不是文件夹", details={"path": folder})

        items: Dict[str, Dict[str, Any]] = {}
        async for entry in self.store.list(folder):
            child = join_path(folder, entry.name)
            items[child] = {
                "id": None,
                "name": entry.name,
                "path": child,
                "isFolder": entry.is_folder,
                "hash": entry.hash,
                "size": 0 if entry.is_folder else entry.size,
                "mimeType": None,
                "createTime": None,
                "source": ResultSource.STORE_ONLY.value,
            }
        rows = await run_in_threadpool(self._children, owner_id, folder)
        for row in rows:
            item = items.get(row.path)
            if item is None:
                items[row.path] = {
                    "id": row.id,
                    "name": row.name,
                    "path": row.path,
                    "isFolder": bool(row.is_folder),
                    "hash": row.content_hash,
                    "size": int(row.size_bytes or 0),
                    "mimeType": row.mime_type,
                    "createTime": isoformat(row.create_time),
                    "source": ResultSource.MIRROR_ONLY.value,
                }
                continue
            item.update(
                {
                    "id": row.id,
                    "mimeType": row.mime_type,
                    "createTime": isoformat(row.create_time),
                    "source": ResultSource.BOTH.value,
                }
            )

        ordered = sorted(items.values(), key=lambda i: (not i["isFolder"], i["name"].casefold(), i["name"]))
        return {"path": folder, "hash": stat.hash, "items": ordered, "total": len(ordered)}

    async def info(self, owner_id: int, path: Optional[str]) -> Dict[str, Any]:
        """节点详情：存储实时状态 + 镜像库记录；文件夹的镜像哈希仅供参考。"""
        target = self._resolve(owner_id, path)
        stat = await self.store.exists(target)
        row, descendants = await run_in_threadpool(self._node_with_count, owner_id, target, stat)
        if stat is None and row is None:
            raise NotFoundError("路径不存在", details={"path": target})
        _, name = split_path(target)
        return {
            "path": target,
            "name": name,
            "isFolder": stat.is_folder if stat is not None else bool(row.is_folder),
            "inStore": stat is not None,
            "inMirror": row is not None,
            "storeHash": stat.hash if stat is not None else None,
            "size": stat.size if stat is not None else int(row.size_bytes or 0),
            "mirror": serialize_node(row) if row is not None else None,
            "mirrorDescendants": descendants,
        }

    async def download(self, owner_id: int, path: Optional[str]) -> DownloadStream:
        target = self._resolve(owner_id, path)
        stat = await self.store.stat(target)
        if stat.is_folder:
            archive = await ArchiveService(self.store, settings=self.settings, locks=self.locks).stream_folder(
                owner_id, target
            )
            return DownloadStream(filename=archive.filename, media_type=ZIP_MEDIA_TYPE, chunks=archive.chunks)

        _, name = split_path(target)
        row = await run_in_threadpool(self._node, owner_id, target, "download")
        rest = self.store.read_stream(target)
        try:
            first = await rest.__anext__()
        except StopAsyncIteration:
            first = b""
        except BaseException:
            await rest.aclose()
            raise
        media_type = (row.mime_type if row is not None else None) or guess_from_name(name) or sniff(first)
        return DownloadStream(filename=name, media_type=media_type, chunks=_prepend(first, rest))
