import io
import zipfile

import pytest

from app.packages.drive.core.exceptions import InvalidPathError, NotFoundError
from app.packages.drive.crud.file_node import file_node_crud

OWNER = 1
ROOT = "/users/1"


@pytest.mark.asyncio
async def test_list_children_tags_sources(tree_service, file_service, store, db_session_fixture):
    await tree_service.create_folder(OWNER, "/", "docs")
    await tree_service.create_file(OWNER, "/", "a.txt", stream=io.BytesIO(b"aaa"))
    await store.mkdir(f"{ROOT}/store-only")
    file_node_crud.create(
        db_session_fixture,
        {
            "owner_id": OWNER,
            "path": f"{ROOT}/ghost.txt",
            "parent_path": ROOT,
            "name": "ghost.txt",
            "is_folder": False,
            "content_hash": "mgone",
            "size_bytes": 1,
            "mime_type": "text/plain",
        },
    )

    listing = await file_service.list_children(OWNER, "/")

    assert listing["path"] == ROOT
    items = {i["name"]: i for i in listing["items"]}
    assert [i["name"] for i in listing["items"]] == ["docs", "store-only", "a.txt", "ghost.txt"]
    assert items["docs"]["source"] == "both"
    assert items["a.txt"]["source"] == "both"
    assert items["a.txt"]["size"] == 3
    assert items["store-only"]["source"] == "store-only"
    assert items["ghost.txt"]["source"] == "mirror-only"


@pytest.mark.asyncio
async def test_list_children_errors(tree_service, file_service):
    await tree_service.create_file(OWNER, "/", "a.txt", stream=io.BytesIO(b"aaa"))
    with pytest.raises(NotFoundError):
        await file_service.list_children(OWNER, "/missing")
    with pytest.raises(InvalidPathError):
        await file_service.list_children(OWNER, "/a.txt")


@pytest.mark.asyncio
async def test_info_reports_live_hash_for_folder(tree_service, file_service, store):
    created = await tree_service.create_folder(OWNER, "/", "docs")
    await tree_service.create_file(OWNER, "/docs", "a.txt", stream=io.BytesIO(b"aaa"))

    info = await file_service.info(OWNER, "/docs")

    assert info["inStore"] and info["inMirror"]
    # 镜像库中的文件夹哈希是创建时的快照，不随子项变化
    assert info["mirror"]["hash"] == created["hash"]
    assert info["storeHash"] == (await store.stat(f"{ROOT}/docs")).hash
    assert info["storeHash"] != created["hash"]
    assert info["mirrorDescendants"] == 1
    with pytest.raises(NotFoundError):
        await file_service.info(OWNER, "/missing")


@pytest.mark.asyncio
async def test_download_file_and_folder(tree_service, file_service):
    await tree_service.create_folder(OWNER, "/", "docs")
    await tree_service.create_file(OWNER, "/docs", "scan", stream=io.BytesIO(b"%PDF-1.4 data"))

    single = await file_service.download(OWNER, "/docs/scan")
    assert single.filename == "scan"
    assert single.media_type == "application/pdf"
    assert b"".join([c async for c in single.chunks]) == b"%PDF-1.4 data"

    bundle = await file_service.download(OWNER, "/docs")
    assert bundle.filename == "docs.zip"
    assert bundle.media_type == "application/zip"
    payload = b"".join([c async for c in bundle.chunks])
    with zipfile.ZipFile(io.BytesIO(payload)) as zf:
        assert zf.read("docs/scan") == b"%PDF-1.4 data"
