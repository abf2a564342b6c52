"""目录树变更协调：所有写操作都经此处，保证内容存储与镜像库的一致性。

每个操作按“存储变更 -> 镜像变更 -> 提交”执行；镜像步骤以任何方式中断（失败或被取消）时
回滚会话并对存储做补偿，补偿本身失败则记录 PartialFailure 并抛出 ``PartialFailureError``，供对账处理。
镜像库访问是同步的 SQLAlchemy 调用，统一放到线程池中执行，不阻塞事件循环。
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Awaitable, BinaryIO, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.packages.drive.core.config import Settings, get_settings
from app.packages.drive.core.enums import TreeOperation
from app.packages.drive.core.exceptions import (
    ConflictError,
    DriveError,
    InvalidPathError,
    MirrorUnavailableError,
    NotFoundError,
    PartialFailureError,
)
from app.packages.drive.core.locks import TreeLockManager
from app.packages.drive.core.logger import logger
from app.packages.drive.core.timezone import isoformat
from app.packages.drive.crud.base import translate_db_errors
from app.packages.drive.crud.file_node import file_node_crud
from app.packages.drive.models.file_node import FileNode
from app.packages.drive.services.store_backends import ContentStore, StoreStat
from app.packages.drive.utils.mime import SNIFF_LENGTH, guess_from_name, is_usable_content_type, sniff
from app.packages.drive.utils.path_utils import (
    is_same_or_descendant,
    join_path,
    owner_root,
    resolve_owner_path,
    split_path,
    validate_content_hash,
    validate_name,
)


def serialize_node(node: FileNode) -> Dict[str, Any]:
    return {
        "id": node.id,
        "name": node.name,
        "path": node.path,
        "parentPath": node.parent_path,
        "isFolder": bool(node.is_folder),
        "hash": node.content_hash,
        "size": int(node.size_bytes or 0),
        "mimeType": node.mime_type,
        "createTime": isoformat(node.create_time),
        "updateTime": isoformat(node.update_time),
    }


def _describe(error: BaseException) -> Tuple[str, str]:
    if isinstance(error, DriveError):
        return error.kind.value, str(error.detail)
    if isinstance(error, asyncio.CancelledError):
        return "cancelled", "operation cancelled by caller"
    return error.__class__.__name__, str(error) or error.__class__.__name__


class TreeService:
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
        # Session 非线程安全：被取消的镜像步骤可能仍在线程中执行，回滚须排在其后
        self._db_guard = threading.Lock()

    # ------------------------------------------
    # 路径与前置校验
    # ------------------------------------------

    def root_of(self, owner_id: int) -> str:
        return owner_root(owner_id, self.settings.users_root)

    def resolve(self, owner_id: int, raw: Optional[str]) -> str:
        return resolve_owner_path(owner_id, raw, self.settings.users_root)

    async def ensure_owner_root(self, owner_id: int) -> str:
        """确保 owner 根目录在存储中存在（根目录不入镜像库）。"""
        root = self.root_of(owner_id)
        await self.store.mkdir(root, parents=True)
        return root

    async def _mirror(self, fn: Callable[..., Any], *args: Any) -> Any:
        def locked() -> Any:
            with self._db_guard:
                return fn(*args)

        return await run_in_threadpool(locked)

    def _lookup(self, owner_id: int, path: str, operation: str) -> Optional[FileNode]:
        with translate_db_errors(operation):
            return file_node_crud.get_by_path(self.db, owner_id=owner_id, path=path)

    async def _require_folder(self, owner_id: int, path: str) -> StoreStat:
        stat = await self.store.exists(path)
        if stat is None:
            raise NotFoundError("目标文件夹不存在", details={"path": path})
        if not stat.is_folder:
            raise InvalidPathError("目标路径不是文件夹", details={"path": path})
        return stat

    async def _require_vacant(self, owner_id: int, path: str) -> None:
        if await self.store.exists(path) is not None:
            raise ConflictError("目标路径已存在", details={"path": path})
        if await self._mirror(self._lookup, owner_id, path, "lookup") is not None:
            raise ConflictError("目标路径已存在（镜像库）", details={"path": path})

    # ------------------------------------------
    # 补偿
    # ------------------------------------------

    async def _compensate(
        self,
        *,
        operation: TreeOperation,
        owner_id: int,
        paths: Dict[str, str],
        content_hash: Optional[str],
        error: BaseException,
        action: Callable[[], Awaitable[None]],
    ) -> None:
        """镜像失败后撤销存储侧变更；不受调用方取消影响。"""
        kind, message = _describe(error)
        try:
            await asyncio.shield(action())
        except Exception as comp_exc:
            reconcile = {
                "operation": operation.value,
                "ownerId": owner_id,
                "paths": paths,
                "hash": content_hash,
                "error": kind,
                "errorMessage": message,
                "compensationError": comp_exc.__class__.__name__,
            }
            logger.error(
                "PartialFailure operation=%s owner=%s paths=%s hash=%s error=%s",
                operation.value,
                owner_id,
                paths,
                content_hash,
                message,
                extra={"reconcile": reconcile},
            )
            raise PartialFailureError("存储与镜像库已不一致，需要对账", details=reconcile) from comp_exc
        logger.warning(
            "Compensated %s for owner=%s paths=%s after mirror step interrupted: %s",
            operation.value,
            owner_id,
            paths,
            message,
        )

    async def _abandon(
        self,
        error: BaseException,
        *,
        operation: TreeOperation,
        owner_id: int,
        paths: Dict[str, str],
        content_hash: Optional[str],
        action: Optional[Callable[[], Awaitable[None]]],
    ) -> None:
        """镜像步骤中断：回滚会话并撤销存储变更，整个过程不可被再次取消打断。

        非类型化的异常转换为 ``MirrorUnavailableError``；类型化错误与取消由调用方原样重新抛出。
        """

        async def undo() -> None:
            await self._mirror(self.db.rollback)
            if action is not None:
                await self._compensate(
                    operation=operation,
                    owner_id=owner_id,
                    paths=paths,
                    content_hash=content_hash,
                    error=error,
                    action=action,
                )

        await asyncio.shield(undo())
        if isinstance(error, Exception) and not isinstance(error, DriveError):
            raise MirrorUnavailableError(
                "镜像库更新失败",
                details={"operation": operation.value, "error": error.__class__.__name__},
            ) from error

    # ------------------------------------------
    # 创建
    # ------------------------------------------

    def _present_paths(self, owner_id: int, paths: List[str]) -> Dict[str, FileNode]:
        with translate_db_errors("create_folder"):
            return file_node_crud.get_by_paths(self.db, owner_id=owner_id, paths=paths)

    def _insert_folders(
        self, owner_id: int, target: str, missing: Iterable[str], stats: Dict[str, StoreStat]
    ) -> FileNode:
        with translate_db_errors("create_folder"):
            for path in missing:
                parent_of, leaf = split_path(path)
                file_node_crud.create(
                    self.db,
                    {
                        "owner_id": owner_id,
                        "path": path,
                        "parent_path": parent_of,
                        "name": leaf,
                        "is_folder": True,
                        "content_hash": stats[path].hash,
                        "size_bytes": 0,
                        "mime_type": None,
                    },
                    auto_commit=False,
                )
            self.db.commit()
            return file_node_crud.get_by_path(self.db, owner_id=owner_id, path=target)

    async def create_folder(self, owner_id: int, parent: Optional[str], name: str) -> Dict[str, Any]:
        name = validate_name(name)
        parent_path = self.resolve(owner_id, parent)
        target = join_path(parent_path, name)
        root = self.root_of(owner_id)

        async with self.locks.exclusive(owner_id):
            await self.ensure_owner_root(owner_id)
            if parent_path != root:
                await self._require_folder(owner_id, parent_path)

            existing = await self.store.exists(target)
            if existing is not None and not existing.is_folder:
                raise ConflictError("同名文件已存在", details={"path": target})
            row = await self._mirror(self._lookup, owner_id, target, "create_folder")
            if row is not None and not row.is_folder:
                raise ConflictError("同名文件已存在（镜像库）", details={"path": target})

            created = existing is None
            if created:
                await self.store.mkdir(target, parents=True)

            try:
                # 镜像库可能落后于存储：补齐 root 与 target 之间缺失的祖先行
                chain = []
                cursor = target
                while cursor != root:
                    chain.append(cursor)
                    cursor, _ = split_path(cursor)
                chain.reverse()
                present = await self._mirror(self._present_paths, owner_id, chain)
                missing = [p for p in chain if p not in present]
                stats = {p: await self.store.stat(p) for p in missing}
                node = await self._mirror(self._insert_folders, owner_id, target, missing, stats)
            except BaseException as exc:
                await self._abandon(
                    exc,
                    operation=TreeOperation.CREATE,
                    owner_id=owner_id,
                    paths={"path": target},
                    content_hash=None,
                    # 仅撤销本次新建的文件夹
                    action=(lambda: self.store.remove(target, recursive=True)) if created else None,
                )
                raise

        logger.info("Folder ready owner=%s path=%s created=%s", owner_id, target, created)
        return serialize_node(node)

    async def _read_head(self, path: str) -> bytes:
        chunks = self.store.read_stream(path)
        try:
            async for chunk in chunks:
                if chunk:
                    return bytes(chunk[:SNIFF_LENGTH])
            return b""
        finally:
            await chunks.aclose()

    def _insert_file(self, values: Dict[str, Any]) -> FileNode:
        with translate_db_errors("create_file"):
            node = file_node_crud.create(self.db, values, auto_commit=False)
            self.db.commit()
            self.db.refresh(node)
            return node

    async def create_file(
        self,
        owner_id: int,
        parent: Optional[str],
        name: str,
        *,
        stream: Optional[BinaryIO] = None,
        content_hash: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """从字节流（先写入存储）或已有内容哈希创建文件节点。"""
        if (stream is None) == (content_hash is None):
            raise InvalidPathError("必须且只能提供文件内容或内容哈希之一")
        name = validate_name(name)
        if content_hash is not None:
            content_hash = validate_content_hash(content_hash)
        parent_path = self.resolve(owner_id, parent)
        target = join_path(parent_path, name)
        root = self.root_of(owner_id)

        async with self.locks.exclusive(owner_id):
            await self.ensure_owner_root(owner_id)
            if parent_path != root:
                await self._require_folder(owner_id, parent_path)
            await self._require_vacant(owner_id, target)

            head: Optional[bytes] = None
            if stream is not None:
                head = stream.read(SNIFF_LENGTH) or b""
                stream.seek(0)
                added = await self.store.add(stream, name=name)
                content_hash = added.hash
            await self.store.link_by_hash(content_hash, target)

            try:
                stat = await self.store.stat(target)
                if stat.is_folder:
                    raise InvalidPathError("内容哈希指向文件夹，无法作为文件创建", details={"hash": content_hash})
                mime = content_type if is_usable_content_type(content_type) else guess_from_name(name)
                if not mime:
                    if head is None:
                        head = await self._read_head(target)
                    mime = sniff(head)
                node = await self._mirror(
                    self._insert_file,
                    {
                        "owner_id": owner_id,
                        "path": target,
                        "parent_path": parent_path,
                        "name": name,
                        "is_folder": False,
                        "content_hash": stat.hash,
                        "size_bytes": stat.size,
                        "mime_type": mime,
                    },
                )
            except BaseException as exc:
                await self._abandon(
                    exc,
                    operation=TreeOperation.CREATE,
                    owner_id=owner_id,
                    paths={"path": target},
                    content_hash=content_hash,
                    action=lambda: self.store.remove(target, recursive=True),
                )
                raise

        logger.info("File created owner=%s path=%s hash=%s", owner_id, target, content_hash)
        return serialize_node(node)

    # ------------------------------------------
    # 重命名 / 移动
    # ------------------------------------------

    async def rename(self, owner_id: int, path: str, new_name: str) -> Dict[str, Any]:
        src = self.resolve(owner_id, path)
        new_name = validate_name(new_name)
        parent_path, _ = split_path(src)
        return await self._relocate(TreeOperation.RENAME, owner_id, src, join_path(parent_path, new_name))

    async def move(self, owner_id: int, path: str, destination_parent: str) -> Dict[str, Any]:
        src = self.resolve(owner_id, path)
        dst_parent = self.resolve(owner_id, destination_parent)
        _, name = split_path(src)
        return await self._relocate(TreeOperation.MOVE, owner_id, src, join_path(dst_parent, name))

    def _relocate_rows(
        self, operation: TreeOperation, owner_id: int, src: str, dst: str, src_stat: StoreStat
    ) -> int:
        dst_parent, dst_name = split_path(dst)
        with translate_db_errors(operation.value):
            row = file_node_crud.get_by_path(self.db, owner_id=owner_id, path=src)
            if row is None:
                # 镜像库落后：按存储状态补录节点行
                file_node_crud.create(
                    self.db,
                    {
                        "owner_id": owner_id,
                        "path": dst,
                        "parent_path": dst_parent,
                        "name": dst_name,
                        "is_folder": src_stat.is_folder,
                        "content_hash": src_stat.hash,
                        "size_bytes": 0 if src_stat.is_folder else src_stat.size,
                        "mime_type": None if src_stat.is_folder else guess_from_name(dst_name),
                    },
                    auto_commit=False,
                )
            else:
                row.path = dst
                row.parent_path = dst_parent
                row.name = dst_name
                self.db.flush()
            updated = 0
            if src_stat.is_folder:
                updated = file_node_crud.rewrite_prefix(self.db, owner_id=owner_id, old_prefix=src, new_prefix=dst)
            self.db.commit()
            return updated

    async def _relocate(self, operation: TreeOperation, owner_id: int, src: str, dst: str) -> Dict[str, Any]:
        root = self.root_of(owner_id)
        if src == root:
            raise InvalidPathError("不能重命名或移动根目录", details={"path": src})
        if src == dst:
            raise ConflictError("目标路径已存在", details={"path": dst})

        async with self.locks.exclusive(owner_id):
            src_stat = await self.store.stat(src)
            if src_stat.is_folder and is_same_or_descendant(dst, src):
                raise InvalidPathError("不能将文件夹移动到自身或其子目录中", details={"path": src, "destination": dst})
            dst_parent, _ = split_path(dst)
            if dst_parent != root:
                await self._require_folder(owner_id, dst_parent)
            await self._require_vacant(owner_id, dst)

            await self.store.move(src, dst)

            try:
                updated = await self._mirror(self._relocate_rows, operation, owner_id, src, dst, src_stat)
            except BaseException as exc:
                await self._abandon(
                    exc,
                    operation=operation,
                    owner_id=owner_id,
                    paths={"oldPath": src, "newPath": dst},
                    content_hash=src_stat.hash,
                    action=lambda: self.store.move(dst, src),
                )
                raise

        logger.info(
            "%s owner=%s %s -> %s descendants=%s", operation.value, owner_id, src, dst, updated
        )
        return {
            "oldPath": src,
            "newPath": dst,
            "isFolder": src_stat.is_folder,
            "descendantsUpdated": updated,
        }

    # ------------------------------------------
    # 删除
    # ------------------------------------------

    def _delete_rows(self, owner_id: int, path: str) -> int:
        with translate_db_errors(TreeOperation.DELETE.value):
            removed = file_node_crud.delete_subtree(self.db, owner_id=owner_id, path=path)
            self.db.commit()
            return removed

    def _purge_rows(self, owner_id: int, path: str) -> Tuple[int, Optional[FileNode]]:
        with translate_db_errors(TreeOperation.DELETE.value):
            row = file_node_crud.get_by_path(self.db, owner_id=owner_id, path=path)
            if row is not None:
                self.db.expunge(row)
            removed = file_node_crud.delete_subtree(self.db, owner_id=owner_id, path=path)
            self.db.commit()
            return removed, row

    async def delete(self, owner_id: int, path: str) -> Dict[str, Any]:
        target = self.resolve(owner_id, path)
        if target == self.root_of(owner_id):
            raise InvalidPathError("不能删除根目录", details={"path": target})

        async with self.locks.exclusive(owner_id):
            stat = await self.store.exists(target)
            if stat is None:
                return await self._purge_mirror_only(owner_id, target)

            await self.store.remove(target, recursive=True)

            try:
                removed = await self._mirror(self._delete_rows, owner_id, target)
            except BaseException as exc:
                # 内容寻址：删除前的子树可按哈希重新挂载
                await self._abandon(
                    exc,
                    operation=TreeOperation.DELETE,
                    owner_id=owner_id,
                    paths={"path": target},
                    content_hash=stat.hash,
                    action=lambda: self.store.link_by_hash(stat.hash, target),
                )
                raise

        logger.info("Deleted owner=%s path=%s rows=%s", owner_id, target, removed)
        return {"path": target, "isFolder": stat.is_folder, "hash": stat.hash, "rowsDeleted": removed}

    async def _purge_mirror_only(self, owner_id: int, target: str) -> Dict[str, Any]:
        """存储中已不存在：清理镜像库中残留的节点及其后代。"""
        try:
            removed, row = await self._mirror(self._purge_rows, owner_id, target)
        except BaseException as exc:
            await self._abandon(
                exc,
                operation=TreeOperation.DELETE,
                owner_id=owner_id,
                paths={"path": target},
                content_hash=None,
                action=None,
            )
            raise
        if removed == 0:
            raise NotFoundError("路径不存在", details={"path": target})
        logger.warning("Purged mirror-only rows owner=%s path=%s rows=%s", owner_id, target, removed)
        return {
            "path": target,
            "isFolder": bool(row.is_folder) if row is not None else True,
            "hash": row.content_hash if row is not None else None,
            "rowsDeleted": removed,
        }
