"""文件与文件夹操作路由。

变更类接口统一经 TreeService，保证内容存储与镜像库同步；
查询类接口（列表/详情/下载/搜索）只读，下载以流式响应返回。
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Query, UploadFile
from fastapi.responses import StreamingResponse

from app.packages.drive.api.v1.schemas.files import (
    DeleteBody,
    FilesListResponse,
    FilesMutationResponse,
    FolderCreateBody,
    LinkByHashBody,
    MoveBody,
    RenameBody,
    SearchBody,
)
from app.packages.drive.core.dependencies import (
    get_file_service,
    get_owner_id,
    get_search_service,
    get_tree_service,
)
from app.packages.drive.core.logger import logger
from app.packages.drive.core.responses import create_response
from app.packages.drive.services.file_service import FileService
from app.packages.drive.services.search_service import SearchService
from app.packages.drive.services.tree_service import TreeService

router = APIRouter(tags=["files"])


def content_disposition(filename: str) -> str:
    """RFC 5987 形式的下载文件名，兼容非 ASCII 名称。"""
    fallback = filename.encode("ascii", "ignore").decode("ascii").replace('"', "") or "download"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"


@router.get("/files", response_model=FilesListResponse)
async def list_items(
    path: Optional[str] = Query("/"),
    owner_id: int = Depends(get_owner_id),
    file_service: FileService = Depends(get_file_service),
):
    data = await file_service.list_children(owner_id, path)
    return create_response("获取文件列表成功", data)


@router.get("/files/info", response_model=FilesMutationResponse)
async def file_info(
    path: str = Query(...),
    owner_id: int = Depends(get_owner_id),
    file_service: FileService = Depends(get_file_service),
):
    data = await file_service.info(owner_id, path)
    return create_response("获取详情成功", data)


@router.get("/files/download")
async def download(
    path: str = Query(...),
    owner_id: int = Depends(get_owner_id),
    file_service: FileService = Depends(get_file_service),
):
    stream = await file_service.download(owner_id, path)
    logger.info("files.download owner=%s path=%s media=%s", owner_id, path, stream.media_type)
    return StreamingResponse(
        stream.chunks,
        media_type=stream.media_type,
        headers={"Content-Disposition": content_disposition(stream.filename)},
    )


@router.post("/folders", response_model=FilesMutationResponse)
async def create_folder(
    body: FolderCreateBody,
    path: Optional[str] = Query("/"),
    owner_id: int = Depends(get_owner_id),
    tree: TreeService = Depends(get_tree_service),
):
    data = await tree.create_folder(owner_id, path, body.name)
    return create_response("新建文件夹成功", data)


@router.post("/files", response_model=FilesMutationResponse)
async def upload(
    path: Optional[str] = Query("/"),
    file: UploadFile = File(...),
    owner_id: int = Depends(get_owner_id),
    tree: TreeService = Depends(get_tree_service),
):
    try:
        data = await tree.create_file(
            owner_id,
            path,
            file.filename or "",
            stream=file.file,
            content_type=file.content_type,
        )
    finally:
        await file.close()
    return create_response("上传成功", data)


@router.post("/files/link", response_model=FilesMutationResponse)
async def link_by_hash(
    body: LinkByHashBody,
    path: Optional[str] = Query("/"),
    owner_id: int = Depends(get_owner_id),
    tree: TreeService = Depends(get_tree_service),
):
    data = await tree.create_file(
        owner_id,
        path,
        body.name,
        content_hash=body.hash,
        content_type=body.contentType,
    )
    return create_response("创建成功", data)


@router.patch("/files", response_model=FilesMutationResponse)
async def rename(
    body: RenameBody,
    owner_id: int = Depends(get_owner_id),
    tree: TreeService = Depends(get_tree_service),
):
    data = await tree.rename(owner_id, body.path, body.newName)
    return create_response("重命名成功", data)


@router.post("/files/move", response_model=FilesMutationResponse)
async def move(
    body: MoveBody,
    owner_id: int = Depends(get_owner_id),
    tree: TreeService = Depends(get_tree_service),
):
    data = await tree.move(owner_id, body.path, body.destinationPath)
    return create_response("移动成功", data)


@router.delete("/files", response_model=FilesMutationResponse)
async def delete(
    body: DeleteBody,
    owner_id: int = Depends(get_owner_id),
    tree: TreeService = Depends(get_tree_service),
):
    data = await tree.delete(owner_id, body.path)
    return create_response("删除成功", data)


@router.post("/files/search", response_model=FilesListResponse)
async def search(
    body: SearchBody,
    owner_id: int = Depends(get_owner_id),
    search_service: SearchService = Depends(get_search_service),
):
    data = await search_service.search(
        owner_id,
        body.path,
        body.query,
        recursive=body.recursive,
        type_filter=body.fileType,
    )
    return create_response("搜索成功", data)
