"""内容寻址存储后端：统一封装 Kubo(MFS) 与进程内存储的目录树操作。

所有方法均按命名空间路径寻址（link_by_hash/read_object 除外），失败时抛出类型化错误：
NotFoundError / AlreadyExistsError / InvalidPathError / OperationTimeoutError / StoreUnavailableError。
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, BinaryIO, Dict, Optional, Union

import httpx

from app.packages.drive.core.exceptions import (
    AlreadyExistsError,
    ConflictError,
    InvalidPathError,
    NotFoundError,
    OperationTimeoutError,
    StoreUnavailableError,
)
from app.packages.drive.core.logger import logger
from app.packages.drive.utils.path_utils import norm_abs_path, split_path


# ------------------------------------------
# 公共数据结构
# ------------------------------------------

@dataclass(frozen=True)
class StoreStat:
    hash: str
    size: int
    type: str  # "file" | "directory"

    @property
    def is_folder(self) -> bool:
        return self.type == "directory"


@dataclass(frozen=True)
class StoreEntry:
    name: str
    hash: str
    size: int
    is_folder: bool


class ContentStore:
    """内容寻址存储接口。"""

    async def mkdir(self, path: str, *, parents: bool = False) -> None:
        raise NotImplementedError

    async def link_by_hash(self, content_hash: str, path: str) -> None:
        raise NotImplementedError

    async def move(self, src: str, dst: str) -> None:
        raise NotImplementedError

    async def remove(self, path: str, *, recursive: bool = False) -> None:
        raise NotImplementedError

    async def stat(self, path: str) -> StoreStat:
        raise NotImplementedError

    def list(self, path: str) -> AsyncIterator[StoreEntry]:
        raise NotImplementedError

    def read_stream(self, path: str) -> AsyncIterator[bytes]:
        raise NotImplementedError

    async def add(self, stream: BinaryIO, *, name: str) -> StoreStat:
        raise NotImplementedError

    def read_object(self, content_hash: str) -> AsyncIterator[bytes]:
        raise NotImplementedError

    async def version(self) -> dict:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None

    async def exists(self, path: str) -> Optional[StoreStat]:
        """stat 的宽松版本：不存在时返回 None。"""
        try:
            return await self.stat(path)
        except NotFoundError:
            return None


# ------------------------------------------
# Kubo RPC 实现（httpx）
# ------------------------------------------

# Kubo 以 500 + {"Message": ...} 报告所有命令错误；这里是唯一按错误文本识别“不存在”的位置。
_MISSING_MARKERS = (
    "file does not exist",
    "no link named",
    "not found",
    "does not exist",
)


def _flag(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class KuboStore(ContentStore):
    def __init__(
        self,
        *,
        api_url: str,
        timeout: float,
        chunk_size: int = 64 * 1024,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        base = api_url.rstrip("/")
        if base.endswith("/api/v0"):
            base = base[: -len("/api/v0")]
        self.api_url = base
        self.chunk_size = chunk_size
        self._client = httpx.AsyncClient(
            base_url=f"{base}/api/v0",
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    # 统一的 RPC 调用：所有命令均为 POST，参数走 query string
    def _params(self, args: tuple[str, ...], options: Optional[Dict[str, Any]]) -> list[tuple[str, str]]:
        query = [("arg", a) for a in args]
        for key, value in (options or {}).items():
            query.append((key, _flag(value)))
        return query

    def _translate_transport(self, command: str, exc: httpx.HTTPError) -> Exception:
        if isinstance(exc, httpx.TimeoutException):
            return OperationTimeoutError("内容存储请求超时", details={"command": command})
        return StoreUnavailableError(
            "内容存储不可用", details={"command": command, "error": exc.__class__.__name__}
        )

    def _raise_for_rpc(self, command: str, args: tuple[str, ...], status_code: int, body: bytes) -> None:
        message = ""
        try:
            payload = json.loads(body.decode("utf-8") or "{}")
            if isinstance(payload, dict):
                message = str(payload.get("Message") or "")
        except (UnicodeDecodeError, ValueError):
            message = body[:200].decode("utf-8", errors="replace")
        details = {"command": command, "args": list(args), "status": status_code}
        lowered = message.lower()
        if status_code == 404 or any(marker in lowered for marker in _MISSING_MARKERS):
            raise NotFoundError("内容存储中不存在该路径或对象", details=details)
        details["store_message"] = message
        raise StoreUnavailableError("内容存储命令执行失败", details=details)

    async def _rpc(
        self,
        command: str,
        *args: str,
        options: Optional[Dict[str, Any]] = None,
        files: Any = None,
    ) -> httpx.Response:
        try:
            resp = await self._client.post(f"/{command}", params=self._params(args, options), files=files)
        except httpx.HTTPError as exc:
            raise self._translate_transport(command, exc) from exc
        if resp.status_code >= 400:
            self._raise_for_rpc(command, args, resp.status_code, resp.content)
        return resp

    async def _stream_rpc(self, command: str, *args: str, options: Optional[Dict[str, Any]] = None) -> AsyncIterator[bytes]:
        try:
            async with self._client.stream("POST", f"/{command}", params=self._params(args, options)) as resp:
                if resp.status_code >= 400:
                    body = await resp.aread()
                    self._raise_for_rpc(command, args, resp.status_code, body)
                async for chunk in resp.aiter_bytes(self.chunk_size):
                    yield chunk
        except httpx.HTTPError as exc:
            raise self._translate_transport(command, exc) from exc

    async def stat(self, path: str) -> StoreStat:
        data = (await self._rpc("files/stat", path)).json()
        return StoreStat(
            hash=str(data.get("Hash") or ""),
            size=int(data.get("Size") or 0),
            type="directory" if data.get("Type") == "directory" else "file",
        )

    async def _stat_object(self, content_hash: str) -> Optional[StoreStat]:
        # offline：仅判断本节点是否已持有该对象，避免向网络检索
        try:
            data = (await self._rpc("files/stat", f"/ipfs/{content_hash}", options={"offline": True})).json()
        except NotFoundError:
            return None
        return StoreStat(
            hash=str(data.get("Hash") or content_hash),
            size=int(data.get("Size") or 0),
            type="directory" if data.get("Type") == "directory" else "file",
        )

    async def mkdir(self, path: str, *, parents: bool = False) -> None:
        existing = await self.exists(path)
        if existing is not None:
            if existing.is_folder:
                return
            raise AlreadyExistsError("同名文件已存在", details={"path": path})
        if not parents:
            parent_path, _ = split_path(path)
            parent = await self.exists(parent_path)
            if parent is None:
                raise NotFoundError("父目录不存在", details={"path": parent_path})
            if not parent.is_folder:
                raise InvalidPathError("父路径不是文件夹", details={"path": parent_path})
        await self._rpc("files/mkdir", path, options={"parents": parents})

    async def link_by_hash(self, content_hash: str, path: str) -> None:
        if await self.exists(path) is not None:
            raise AlreadyExistsError("目标路径已存在", details={"path": path})
        if await self._stat_object(content_hash) is None:
            raise NotFoundError("内容哈希不存在", details={"hash": content_hash})
        await self._rpc("files/cp", f"/ipfs/{content_hash}", path)

    async def move(self, src: str, dst: str) -> None:
        if await self.exists(src) is None:
            raise NotFoundError("源路径不存在", details={"path": src})
        if await self.exists(dst) is not None:
            raise AlreadyExistsError("目标路径已存在", details={"path": dst})
        await self._rpc("files/mv", src, dst)

    async def remove(self, path: str, *, recursive: bool = False) -> None:
        target = await self.exists(path)
        if target is None:
            raise NotFoundError("路径不存在", details={"path": path})
        if target.is_folder and not recursive:
            async for _ in self.list(path):
                raise ConflictError("文件夹非空，需要递归删除", details={"path": path})
        await self._rpc("files/rm", path, options={"recursive": recursive})

    async def list(self, path: str) -> AsyncIterator[StoreEntry]:
        data = (await self._rpc("files/ls", path, options={"long": True, "U": True})).json()
        for entry in data.get("Entries") or []:
            yield StoreEntry(
                name=str(entry.get("Name")),
                hash=str(entry.get("Hash") or ""),
                size=int(entry.get("Size") or 0),
                is_folder=int(entry.get("Type") or 0) == 1,
            )

    def read_stream(self, path: str) -> AsyncIterator[bytes]:
        return self._stream_rpc("files/read", path)

    async def add(self, stream: BinaryIO, *, name: str) -> StoreStat:
        resp = await self._rpc(
            "add",
            options={"pin": True, "cid-version": 1, "quieter": True},
            files={"file": (name, stream, "application/octet-stream")},
        )
        # 响应为 NDJSON，最后一行是根对象
        lines = [line for line in resp.text.splitlines() if line.strip()]
        if not lines:
            raise StoreUnavailableError("内容存储未返回对象哈希", details={"command": "add"})
        content_hash = str(json.loads(lines[-1]).get("Hash") or "")
        stat = await self._stat_object(content_hash)
        if stat is None:
            raise StoreUnavailableError("新写入的对象无法读取", details={"hash": content_hash})
        return stat

    def read_object(self, content_hash: str) -> AsyncIterator[bytes]:
        return self._stream_rpc("cat", content_hash)

    async def version(self) -> dict:
        return (await self._rpc("version")).json()

    async def aclose(self) -> None:
        await self._client.aclose()


# ------------------------------------------
# 进程内实现（开发与测试）
# ------------------------------------------

_MemNode = Union["_MemDir", str]  # 文件节点以对象哈希表示


class _MemDir:
    def __init__(self) -> None:
        self.children: Dict[str, _MemNode] = {}


def _digest(payload: bytes) -> str:
    return "m" + hashlib.sha256(payload).hexdigest()


class MemoryStore(ContentStore):
    """进程内的内容寻址存储：对象按 SHA-256 寻址，目录快照在 stat 时登记。"""

    def __init__(self, *, chunk_size: int = 64 * 1024) -> None:
        self.chunk_size = chunk_size
        self._blobs: Dict[str, bytes] = {}
        self._trees: Dict[str, Dict[str, tuple[str, bool]]] = {}
        self._root = _MemDir()

    def _walk(self, path: str) -> Optional[_MemNode]:
        node: _MemNode = self._root
        for seg in [s for s in norm_abs_path(path).split("/") if s]:
            if not isinstance(node, _MemDir):
                return None
            child = node.children.get(seg)
            if child is None:
                return None
            node = child
        return node

    def _parent_dir(self, path: str) -> tuple[_MemDir, str]:
        parent_path, name = split_path(norm_abs_path(path))
        parent = self._walk(parent_path)
        if parent is None:
            raise NotFoundError("父目录不存在", details={"path": parent_path})
        if not isinstance(parent, _MemDir):
            raise InvalidPathError("父路径不是文件夹", details={"path": parent_path})
        return parent, name

    def _snapshot(self, node: _MemDir) -> str:
        listing = {}
        for name, child in node.children.items():
            if isinstance(child, _MemDir):
                listing[name] = (self._snapshot(child), True)
            else:
                listing[name] = (child, False)
        encoded = json.dumps(sorted(listing.items()), ensure_ascii=False).encode("utf-8")
        tree_hash = _digest(b"tree:" + encoded)
        self._trees[tree_hash] = listing
        return tree_hash

    def _materialize(self, tree_hash: str) -> _MemDir:
        node = _MemDir()
        for name, (child_hash, is_folder) in self._trees[tree_hash].items():
            node.children[name] = self._materialize(child_hash) if is_folder else child_hash
        return node

    def _node_stat(self, node: _MemNode) -> StoreStat:
        if isinstance(node, _MemDir):
            return StoreStat(hash=self._snapshot(node), size=0, type="directory")
        return StoreStat(hash=node, size=len(self._blobs[node]), type="file")

    async def stat(self, path: str) -> StoreStat:
        node = self._walk(path)
        if node is None:
            raise NotFoundError("内容存储中不存在该路径或对象", details={"path": path})
        return self._node_stat(node)

    async def mkdir(self, path: str, *, parents: bool = False) -> None:
        existing = self._walk(path)
        if existing is not None:
            if isinstance(existing, _MemDir):
                return
            raise AlreadyExistsError("同名文件已存在", details={"path": path})
        if parents:
            node = self._root
            for seg in [s for s in norm_abs_path(path).split("/") if s]:
                child = node.children.get(seg)
                if child is None:
                    child = node.children[seg] = _MemDir()
                if not isinstance(child, _MemDir):
                    raise InvalidPathError("父路径不是文件夹", details={"path": path})
                node = child
            return
        parent, name = self._parent_dir(path)
        parent.children[name] = _MemDir()

    async def link_by_hash(self, content_hash: str, path: str) -> None:
        if self._walk(path) is not None:
            raise AlreadyExistsError("目标路径已存在", details={"path": path})
        parent, name = self._parent_dir(path)
        if content_hash in self._blobs:
            parent.children[name] = content_hash
        elif content_hash in self._trees:
            parent.children[name] = self._materialize(content_hash)
        else:
            raise NotFoundError("内容哈希不存在", details={"hash": content_hash})

    async def move(self, src: str, dst: str) -> None:
        node = self._walk(src)
        if node is None:
            raise NotFoundError("源路径不存在", details={"path": src})
        if self._walk(dst) is not None:
            raise AlreadyExistsError("目标路径已存在", details={"path": dst})
        dst_parent, dst_name = self._parent_dir(dst)
        src_parent, src_name = self._parent_dir(src)
        del src_parent.children[src_name]
        dst_parent.children[dst_name] = node

    async def remove(self, path: str, *, recursive: bool = False) -> None:
        node = self._walk(path)
        if node is None:
            raise NotFoundError("路径不存在", details={"path": path})
        if isinstance(node, _MemDir) and node.children and not recursive:
            raise ConflictError("文件夹非空，需要递归删除", details={"path": path})
        parent, name = self._parent_dir(path)
        del parent.children[name]

    async def list(self, path: str) -> AsyncIterator[StoreEntry]:
        node = self._walk(path)
        if node is None:
            raise NotFoundError("路径不存在", details={"path": path})
        if not isinstance(node, _MemDir):
            raise InvalidPathError("目标不是文件夹", details={"path": path})
        for name, child in list(node.children.items()):
            stat = self._node_stat(child)
            yield StoreEntry(name=name, hash=stat.hash, size=stat.size, is_folder=stat.is_folder)

    async def _iter_blob(self, content_hash: str) -> AsyncIterator[bytes]:
        data = self._blobs[content_hash]
        for offset in range(0, len(data), self.chunk_size):
            yield data[offset : offset + self.chunk_size]

    async def read_stream(self, path: str) -> AsyncIterator[bytes]:
        node = self._walk(path)
        if node is None:
            raise NotFoundError("文件不存在", details={"path": path})
        if isinstance(node, _MemDir):
            raise InvalidPathError("目标是文件夹", details={"path": path})
        async for chunk in self._iter_blob(node):
            yield chunk

    async def add(self, stream: BinaryIO, *, name: str) -> StoreStat:
        buf = bytearray()
        while True:
            chunk = stream.read(self.chunk_size)
            if not chunk:
                break
            buf.extend(chunk)
        data = bytes(buf)
        content_hash = _digest(b"blob:" + data)
        self._blobs[content_hash] = data
        logger.debug("memory store add name=%s hash=%s size=%s", name, content_hash, len(data))
        return StoreStat(hash=content_hash, size=len(data), type="file")

    async def read_object(self, content_hash: str) -> AsyncIterator[bytes]:
        if content_hash not in self._blobs:
            raise NotFoundError("内容哈希不存在", details={"hash": content_hash})
        async for chunk in self._iter_blob(content_hash):
            yield chunk

    async def version(self) -> dict:
        return {"Version": "memory", "System": "in-process"}


def build_store(*, type: str, api_url: Optional[str] = None, timeout: float = 30.0, chunk_size: int = 64 * 1024) -> ContentStore:
    t = (type or "").upper()
    if t == "KUBO":
        if not api_url:
            raise InvalidPathError("缺少 Kubo RPC 地址配置")
        return KuboStore(api_url=api_url, timeout=timeout, chunk_size=chunk_size)
    if t == "MEMORY":
        return MemoryStore(chunk_size=chunk_size)
    raise InvalidPathError("不支持的存储类型", details={"type": type})
