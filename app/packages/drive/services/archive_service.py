"""文件夹打包下载：边遍历边压缩，按块输出 zip 字节流，不在内存中缓冲整棵树。"""

from __future__ import annotations

import zipfile
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from app.packages.drive.core.config import Settings, get_settings
from app.packages.drive.core.exceptions import InvalidPathError, OperationTimeoutError
from app.packages.drive.core.locks import TreeLockManager
from app.packages.drive.core.logger import logger
from app.packages.drive.services.store_backends import ContentStore, StoreEntry
from app.packages.drive.utils.path_utils import join_path, resolve_owner_path, split_path

# 超过该大小（或大小未知）的条目强制使用 Zip64 头
_ZIP64_THRESHOLD = zipfile.ZIP64_LIMIT // 2


class _DrainSink:
    """只写、不可 seek 的缓冲区；zipfile 写入后由生成器取走并清空。"""

    def __init__(self) -> None:
        self._parts: List[bytes] = []

    def write(self, data) -> int:
        self._parts.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        return None

    def drain(self) -> bytes:
        if not self._parts:
            return b""
        data = b"".join(self._parts)
        self._parts.clear()
        return data


@dataclass
class ArchiveStream:
    filename: str
    chunks: AsyncIterator[bytes]


class ArchiveService:
    def __init__(
        self,
        store: ContentStore,
        *,
        settings: Optional[Settings] = None,
        locks: Optional[TreeLockManager] = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.locks = locks or TreeLockManager(enabled=False)

    async def stream_folder(self, owner_id: int, path: Optional[str]) -> ArchiveStream:
        """校验目标后返回 zip 流；目标缺失/非文件夹的错误在响应开始前抛出。"""
        folder = resolve_owner_path(owner_id, path, self.settings.users_root)
        stat = await self.store.stat(folder)
        if not stat.is_folder:
            raise InvalidPathError("目标不是文件夹", details={"path": folder})
        _, root_name = split_path(folder)
        return ArchiveStream(
            filename=f"{root_name}.zip",
            chunks=self._generate(owner_id, folder, root_name),
        )

    async def _generate(self, owner_id: int, folder: str, root_name: str) -> AsyncIterator[bytes]:
        sink = _DrainSink()
        max_depth = int(self.settings.tree_max_depth)
        files = folders = 0
        async with self.locks.shared(owner_id):
            try:
                with zipfile.ZipFile(
                    sink,
                    mode="w",
                    compression=zipfile.ZIP_DEFLATED,
                    compresslevel=int(self.settings.archive_compress_level),
                    allowZip64=True,
                ) as zf:
                    # 显式栈：(存储路径, 归档内名称, 深度)
                    stack: List[tuple[str, str, int]] = [(folder, root_name, 0)]
                    visited: set[str] = set()
                    while stack:
                        current, arc_dir, depth = stack.pop()
                        if current in visited:
                            continue
                        visited.add(current)
                        if depth > max_depth:
                            raise OperationTimeoutError(
                                "目录层级超过上限，打包中止",
                                details={"path": current, "maxDepth": max_depth},
                            )
                        folders += 1

                        entries: List[StoreEntry] = [entry async for entry in self.store.list(current)]
                        if not entries:
                            info = zipfile.ZipInfo(arc_dir + "/")
                            info.external_attr = (0o40755 << 16) | 0x10
                            zf.writestr(info, b"")
                            yield sink.drain()
                            continue

                        entries.sort(key=lambda e: e.name)
                        subfolders: List[StoreEntry] = []
                        for entry in entries:
                            if entry.is_folder:
                                subfolders.append(entry)
                                continue
                            async for chunk in self._write_file(zf, sink, current, arc_dir, entry):
                                yield chunk
                            files += 1
                        for sub in reversed(subfolders):
                            stack.append((join_path(current, sub.name), f"{arc_dir}/{sub.name}", depth + 1))
                tail = sink.drain()
                if tail:
                    yield tail
            except Exception:
                logger.error("Archive stream aborted owner=%s folder=%s", owner_id, folder, exc_info=True)
                raise
        logger.info("Archive streamed owner=%s folder=%s files=%s folders=%s", owner_id, folder, files, folders)

    async def _write_file(
        self,
        zf: zipfile.ZipFile,
        sink: _DrainSink,
        folder: str,
        arc_dir: str,
        entry: StoreEntry,
    ) -> AsyncIterator[bytes]:
        force_zip64 = entry.size <= 0 or entry.size >= _ZIP64_THRESHOLD
        chunks = self.store.read_stream(join_path(folder, entry.name))
        try:
            with zf.open(f"{arc_dir}/{entry.name}", mode="w", force_zip64=force_zip64) as dest:
                async for chunk in chunks:
                    dest.write(chunk)
                    data = sink.drain()
                    if data:
                        yield data
            data = sink.drain()
            if data:
                yield data
        finally:
            await chunks.aclose()
