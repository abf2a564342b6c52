"""按内容哈希取回数据的路由。"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from app.packages.drive.core.dependencies import get_retrieval_service
from app.packages.drive.services.retrieval_service import RetrievalService

router = APIRouter(tags=["content"])


@router.get("/content/{content_hash}")
async def fetch_content(
    content_hash: str,
    retrieval: RetrievalService = Depends(get_retrieval_service),
):
    resolved = await retrieval.resolve(content_hash)
    return StreamingResponse(
        resolved.chunks,
        media_type=resolved.media_type,
        headers={"X-Retrieval-Strategy": resolved.strategy.value},
    )
