"""文件与文件夹操作请求/响应模型。"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from app.packages.drive.api.v1.schemas.common import ResponseEnvelope
from app.packages.drive.core.enums import NodeTypeFilter


class FolderCreateBody(BaseModel):
    name: str = Field(..., min_length=1)


class LinkByHashBody(BaseModel):
    name: str = Field(..., min_length=1)
    hash: str = Field(..., min_length=1)
    contentType: Optional[str] = None


class RenameBody(BaseModel):
    path: str
    newName: str = Field(..., min_length=1)


class MoveBody(BaseModel):
    path: str
    destinationPath: str


class DeleteBody(BaseModel):
    path: str


class SearchBody(BaseModel):
    path: Optional[str] = "/"
    query: str
    recursive: bool = True
    fileType: NodeTypeFilter = NodeTypeFilter.ALL


FilesListResponse = ResponseEnvelope[dict]
FilesMutationResponse = ResponseEnvelope[Any]
