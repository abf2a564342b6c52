"""异常处理模块：定义统一的业务异常、目录树错误分类与响应格式。"""

from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from app.packages.drive.core.enums import ErrorKind


class AppException(HTTPException):
    """携带统一响应结构的业务异常，方便在全局处理中转换响应体。"""

    def __init__(self, msg: str, code: int = status.HTTP_400_BAD_REQUEST, data=None) -> None:
        super().__init__(status_code=code, detail=msg)
        self.data = data


class DriveError(AppException):
    """目录树/检索引擎的类型化错误基类。

    每个子类对应 ``ErrorKind`` 中的一种，调用方依据类型（而不是错误文本）做分支；
    ``retryable`` 标记是否适合由调用方自行做有限次退避重试，核心本身从不重试。
    """

    kind: ErrorKind = ErrorKind.STORE_UNAVAILABLE
    code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable: bool = False

    def __init__(self, msg: str, *, details: Optional[dict[str, Any]] = None) -> None:
        self.details = dict(details or {})
        data = {"kind": self.kind.value, "retryable": self.retryable, **self.details}
        super().__init__(msg, self.code, data)


class NotFoundError(DriveError):
    kind = ErrorKind.NOT_FOUND
    code = status.HTTP_404_NOT_FOUND


class AlreadyExistsError(DriveError):
    kind = ErrorKind.CONFLICT
    code = status.HTTP_409_CONFLICT


# 目标路径冲突与“已存在”属于同一错误类型
ConflictError = AlreadyExistsError


class InvalidPathError(DriveError):
    kind = ErrorKind.INVALID_PATH
    code = status.HTTP_400_BAD_REQUEST


class OperationTimeoutError(DriveError):
    kind = ErrorKind.TIMEOUT
    code = status.HTTP_504_GATEWAY_TIMEOUT
    retryable = True


class StoreUnavailableError(DriveError):
    kind = ErrorKind.STORE_UNAVAILABLE
    code = status.HTTP_502_BAD_GATEWAY
    retryable = True


class MirrorUnavailableError(DriveError):
    kind = ErrorKind.MIRROR_UNAVAILABLE
    code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class PartialFailureError(DriveError):
    """存储与镜像已分裂且补偿失败，需要人工或自动对账。"""

    kind = ErrorKind.PARTIAL_FAILURE
    code = status.HTTP_500_INTERNAL_SERVER_ERROR


class RetrievalFailedError(DriveError):
    kind = ErrorKind.RETRIEVAL_FAILED
    code = status.HTTP_404_NOT_FOUND


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:  # pragma: no cover - framework glue
    """将 FastAPI 的 ``HTTPException`` 转换为统一响应格式。"""
    payload = {"msg": exc.detail, "data": getattr(exc, "data", None), "code": exc.status_code}
    return JSONResponse(status_code=exc.status_code, content=payload)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # pragma: no cover - framework glue
    """兜底处理：将未捕获异常转换为标准的 500 响应结构。"""
    payload = {
        "msg": "服务器内部错误",
        "data": None,
        "code": status.HTTP_500_INTERNAL_SERVER_ERROR,
    }
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=payload)
