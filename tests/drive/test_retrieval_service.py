"""按哈希取回：网关降级链、MIME 嗅探与失败汇总。"""

import io

import httpx
import pytest

from app.packages.drive.core.enums import RetrievalStrategy
from app.packages.drive.core.exceptions import InvalidPathError, RetrievalFailedError
from app.packages.drive.services.retrieval_service import RetrievalService

PDF = b"%PDF-1.7\n" + b"0" * 5000


async def _drain(resolved) -> bytes:
    return b"".join([chunk async for chunk in resolved.chunks])


class _Recorder:
    def __init__(self, responder):
        self.responder = responder
        self.hosts = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.hosts.append((request.url.host, request.url.path))
        return self.responder(request)


@pytest.mark.asyncio
async def test_falls_back_to_path_gateway_and_sniffs_pdf(store, settings):
    def responder(request):
        if request.url.host.endswith(".ipfs.localhost"):
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, content=PDF, headers={"content-type": "application/octet-stream"})

    recorder = _Recorder(responder)
    service = RetrievalService(store, settings=settings, transport=httpx.MockTransport(recorder))

    resolved = await service.resolve("bafkreihash1")

    assert resolved.strategy == RetrievalStrategy.PATH_GATEWAY
    assert resolved.media_type == "application/pdf"
    assert await _drain(resolved) == PDF
    assert recorder.hosts == [("bafkreihash1.ipfs.localhost", "/"), ("localhost", "/ipfs/bafkreihash1")]
    assert resolved.attempts == [{"strategy": "subdomain-gateway", "status": 502}]


@pytest.mark.asyncio
async def test_subdomain_gateway_wins_with_declared_type(store, settings):
    def responder(request):
        return httpx.Response(200, content=b"\x89PNG\r\n\x1a\nxx", headers={"content-type": "image/png"})

    service = RetrievalService(store, settings=settings, transport=httpx.MockTransport(responder))
    resolved = await service.resolve("bafkreihash2")

    assert resolved.strategy == RetrievalStrategy.SUBDOMAIN_GATEWAY
    assert resolved.media_type == "image/png"
    assert await _drain(resolved) == b"\x89PNG\r\n\x1a\nxx"


@pytest.mark.asyncio
async def test_raw_object_read_after_gateways_fail(store, settings):
    added = await store.add(io.BytesIO(PDF), name="doc")

    def responder(request):
        raise httpx.ConnectError("gateway down", request=request)

    service = RetrievalService(store, settings=settings, transport=httpx.MockTransport(responder))
    resolved = await service.resolve(added.hash)

    assert resolved.strategy == RetrievalStrategy.RAW_OBJECT
    assert resolved.media_type == "application/pdf"
    assert await _drain(resolved) == PDF
    assert [a["strategy"] for a in resolved.attempts] == ["subdomain-gateway", "path-gateway"]


@pytest.mark.asyncio
async def test_exhausted_chain_raises_retrieval_failed(store, settings):
    def responder(request):
        return httpx.Response(404)

    service = RetrievalService(store, settings=settings, transport=httpx.MockTransport(responder))
    with pytest.raises(RetrievalFailedError) as excinfo:
        await service.resolve("bafkreimissing")

    assert excinfo.value.status_code == 404
    attempts = excinfo.value.data["attempts"]
    assert [a["strategy"] for a in attempts] == ["subdomain-gateway", "path-gateway", "raw-object"]


@pytest.mark.asyncio
async def test_invalid_hash_makes_no_requests(store, settings):
    recorder = _Recorder(lambda request: httpx.Response(200))
    service = RetrievalService(store, settings=settings, transport=httpx.MockTransport(recorder))

    with pytest.raises(InvalidPathError):
        await service.resolve("../../etc/passwd")
    assert recorder.hosts == []


@pytest.mark.asyncio
async def test_disabled_gateway_is_skipped(store, settings):
    recorder = _Recorder(lambda request: httpx.Response(200, content=b"GIF89a..."))
    only_path = settings.model_copy(update={"gateway_subdomain_template": ""})
    service = RetrievalService(store, settings=only_path, transport=httpx.MockTransport(recorder))

    resolved = await service.resolve("bafkreihash3")

    assert resolved.strategy == RetrievalStrategy.PATH_GATEWAY
    assert resolved.media_type == "image/gif"
    assert recorder.hosts == [("localhost", "/ipfs/bafkreihash3")]
    await _drain(resolved)
