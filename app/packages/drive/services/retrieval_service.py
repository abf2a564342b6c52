"""按内容哈希取回数据：子域名网关 -> 路径网关 -> 存储直读，首个成功者胜出。

首块数据会被预读：传输层未给出可用的 Content-Type 时，按字节签名嗅探 MIME。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

from app.packages.drive.core.config import Settings, get_settings
from app.packages.drive.core.enums import RetrievalStrategy
from app.packages.drive.core.exceptions import DriveError, RetrievalFailedError
from app.packages.drive.core.logger import logger
from app.packages.drive.services.store_backends import ContentStore
from app.packages.drive.utils.mime import resolve_media_type
from app.packages.drive.utils.path_utils import validate_content_hash


@dataclass
class ResolvedContent:
    strategy: RetrievalStrategy
    media_type: str
    chunks: AsyncIterator[bytes]
    attempts: List[Dict[str, Any]] = field(default_factory=list)


async def _first_chunk(iterator: AsyncIterator[bytes]) -> bytes:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return b""


async def _relay(
    first: bytes,
    rest: AsyncIterator[bytes],
    closers: List[Callable[[], Awaitable[None]]],
) -> AsyncIterator[bytes]:
    try:
        if first:
            yield first
        async for chunk in rest:
            yield chunk
    except httpx.HTTPError as exc:
        raise RetrievalFailedError("内容传输中断", details={"error": exc.__class__.__name__}) from exc
    finally:
        for close in closers:
            await close()


class RetrievalService:
    def __init__(
        self,
        store: ContentStore,
        *,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.transport = transport

    def _gateway_urls(self, content_hash: str) -> List[tuple[RetrievalStrategy, str]]:
        urls = []
        if self.settings.gateway_subdomain_template:
            urls.append(
                (RetrievalStrategy.SUBDOMAIN_GATEWAY, self.settings.gateway_subdomain_template.format(cid=content_hash))
            )
        if self.settings.gateway_path_template:
            urls.append(
                (RetrievalStrategy.PATH_GATEWAY, self.settings.gateway_path_template.format(cid=content_hash))
            )
        return urls

    async def _try_gateway(
        self, strategy: RetrievalStrategy, url: str, attempts: List[Dict[str, Any]]
    ) -> Optional[ResolvedContent]:
        client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.gateway_timeout_seconds),
            transport=self.transport,
            follow_redirects=True,
        )
        try:
            resp = await client.send(client.build_request("GET", url), stream=True)
        except httpx.HTTPError as exc:
            await client.aclose()
            attempts.append({"strategy": strategy.value, "error": exc.__class__.__name__})
            return None
        if not 200 <= resp.status_code < 300:
            await resp.aclose()
            await client.aclose()
            attempts.append({"strategy": strategy.value, "status": resp.status_code})
            return None
        rest = resp.aiter_bytes(int(self.settings.stream_chunk_size))
        try:
            first = await _first_chunk(rest)
        except httpx.HTTPError as exc:
            await resp.aclose()
            await client.aclose()
            attempts.append({"strategy": strategy.value, "error": exc.__class__.__name__})
            return None
        media_type = resolve_media_type(resp.headers.get("content-type"), first)
        return ResolvedContent(
            strategy=strategy,
            media_type=media_type,
            chunks=_relay(first, rest, [resp.aclose, client.aclose]),
            attempts=attempts,
        )

    async def resolve(self, content_hash: str) -> ResolvedContent:
        content_hash = validate_content_hash(content_hash)
        attempts: List[Dict[str, Any]] = []

        for strategy, url in self._gateway_urls(content_hash):
            resolved = await self._try_gateway(strategy, url, attempts)
            if resolved is not None:
                logger.info("Resolved %s via %s media=%s", content_hash, strategy.value, resolved.media_type)
                return resolved
            logger.info("Retrieval strategy %s failed for %s", strategy.value, content_hash)

        rest = self.store.read_object(content_hash)
        try:
            first = await _first_chunk(rest)
        except DriveError as exc:
            await rest.aclose()
            attempts.append({"strategy": RetrievalStrategy.RAW_OBJECT.value, "error": exc.kind.value})
            logger.warning("All retrieval strategies failed for %s: %s", content_hash, attempts)
            raise RetrievalFailedError(
                "无法通过任何途径取回内容", details={"hash": content_hash, "attempts": attempts}
            ) from exc
        # 直读没有传输层类型，始终嗅探
        media_type = resolve_media_type(None, first)
        logger.info("Resolved %s via %s media=%s", content_hash, RetrievalStrategy.RAW_OBJECT.value, media_type)
        return ResolvedContent(
            strategy=RetrievalStrategy.RAW_OBJECT,
            media_type=media_type,
            chunks=_relay(first, rest, [rest.aclose]),
            attempts=attempts,
        )
