"""合并搜索：去重、来源标注、排序与异常目录跳过。"""

import io

import pytest

from app.packages.drive.core.enums import NodeTypeFilter
from app.packages.drive.core.exceptions import (
    InvalidPathError,
    NotFoundError,
    StoreUnavailableError,
)
from app.packages.drive.crud.file_node import file_node_crud

OWNER = 1
ROOT = "/users/1"


async def _seed(tree, store, db):
    await tree.create_folder(OWNER, "/", "docs")
    await tree.create_folder(OWNER, "/docs", "sub")
    await tree.create_folder(OWNER, "/docs/sub", "deep")
    await tree.create_file(OWNER, "/docs", "report.txt", stream=io.BytesIO(b"r1"))
    await tree.create_file(OWNER, "/docs/sub", "Report", stream=io.BytesIO(b"r2"))
    await tree.create_file(OWNER, "/docs/sub/deep", "report-2.txt", stream=io.BytesIO(b"r3"))
    # 仅存在于存储
    await store.mkdir(f"{ROOT}/docs/report-drafts")
    # 仅存在于镜像库
    file_node_crud.create(
        db,
        {
            "owner_id": OWNER,
            "path": f"{ROOT}/docs/old-report.txt",
            "parent_path": f"{ROOT}/docs",
            "name": "old-report.txt",
            "is_folder": False,
            "content_hash": "mstale",
            "size_bytes": 9,
            "mime_type": "text/plain",
        },
    )


@pytest.mark.asyncio
async def test_search_merges_and_orders(tree_service, search_service, store, db_session_fixture):
    await _seed(tree_service, store, db_session_fixture)

    result = await search_service.search(OWNER, "/docs", "report", recursive=True)

    paths = [item["path"] for item in result["items"]]
    assert paths == [
        f"{ROOT}/docs/sub/Report",
        f"{ROOT}/docs/old-report.txt",
        f"{ROOT}/docs/report-drafts",
        f"{ROOT}/docs/report.txt",
        f"{ROOT}/docs/sub/deep/report-2.txt",
    ]
    assert len(set(paths)) == len(paths) == result["total"]
    by_path = {item["path"]: item for item in result["items"]}
    assert by_path[f"{ROOT}/docs/report.txt"]["source"] == "both"
    assert by_path[f"{ROOT}/docs/report.txt"]["id"] is not None
    assert by_path[f"{ROOT}/docs/report.txt"]["mimeType"] == "text/plain"
    assert by_path[f"{ROOT}/docs/report-drafts"]["source"] == "store-only"
    assert by_path[f"{ROOT}/docs/old-report.txt"]["source"] == "mirror-only"
    assert by_path[f"{ROOT}/docs/old-report.txt"]["depth"] == 1
    assert by_path[f"{ROOT}/docs/sub/deep/report-2.txt"]["depth"] == 3


@pytest.mark.asyncio
async def test_search_non_recursive_and_type_filter(tree_service, search_service, store, db_session_fixture):
    await _seed(tree_service, store, db_session_fixture)

    shallow = await search_service.search(OWNER, "/docs", "REPORT", recursive=False)
    assert {i["path"] for i in shallow["items"]} == {
        f"{ROOT}/docs/old-report.txt",
        f"{ROOT}/docs/report-drafts",
        f"{ROOT}/docs/report.txt",
    }

    folders = await search_service.search(
        OWNER, "/docs", "report", recursive=True, type_filter=NodeTypeFilter.FOLDER
    )
    assert [i["path"] for i in folders["items"]] == [f"{ROOT}/docs/report-drafts"]


@pytest.mark.asyncio
async def test_search_skips_inaccessible_subfolder(tree_service, search_service, store, db_session_fixture, monkeypatch):
    await _seed(tree_service, store, db_session_fixture)
    original = store.list

    def flaky(path):
        if path == f"{ROOT}/docs/sub":
            async def broken():
                raise StoreUnavailableError("unreachable")
                yield  # pragma: no cover

            return broken()
        return original(path)

    monkeypatch.setattr(store, "list", flaky)
    result = await search_service.search(OWNER, "/docs", "report", recursive=True)

    by_path = {item["path"]: item for item in result["items"]}
    # 存储侧跳过了 sub，镜像库仍能补全
    assert by_path[f"{ROOT}/docs/sub/Report"]["source"] == "mirror-only"
    assert by_path[f"{ROOT}/docs/report.txt"]["source"] == "both"


@pytest.mark.asyncio
async def test_search_validation(tree_service, search_service):
    await tree_service.create_file(OWNER, "/", "a.txt", stream=io.BytesIO(b"x"))
    with pytest.raises(InvalidPathError):
        await search_service.search(OWNER, "/", "   ")
    with pytest.raises(InvalidPathError):
        await search_service.search(OWNER, "/a.txt", "a")
    with pytest.raises(NotFoundError):
        await search_service.search(OWNER, "/missing", "a")


@pytest.mark.asyncio
async def test_search_folds_non_ascii_case_on_both_sides(tree_service, search_service):
    await tree_service.create_file(OWNER, "/", "ÄRGER.txt", stream=io.BytesIO(b"x"))
    await tree_service.create_file(OWNER, "/", "ärgerlich.md", stream=io.BytesIO(b"y"))

    result = await search_service.search(OWNER, "/", "ärger", recursive=True)

    assert [(i["name"], i["source"]) for i in result["items"]] == [
        ("ÄRGER.txt", "both"),
        ("ärgerlich.md", "both"),
    ]
