"""CRUD 基类：为各实体提供通用的数据访问方法与数据库异常转换。"""

from contextlib import contextmanager
from typing import Any, Dict, Generic, Iterator, Type, TypeVar

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.packages.drive.core.exceptions import MirrorUnavailableError, OperationTimeoutError
from app.packages.drive.models.base import Base

ModelType = TypeVar("ModelType", bound=Base)

# PostgreSQL: query_canceled（statement_timeout 触发）
_PG_QUERY_CANCELED = "57014"


@contextmanager
def translate_db_errors(operation: str) -> Iterator[None]:
    """将 SQLAlchemy 异常转换为类型化的镜像库错误。

    语句超时映射为 ``OperationTimeoutError``，其余数据库故障映射为 ``MirrorUnavailableError``；
    唯一约束等完整性错误同样视为镜像库不可用，由上层决定是否补偿。
    """
    try:
        yield
    except SQLAlchemyError as exc:
        orig = getattr(exc, "orig", None)
        if isinstance(exc, DBAPIError) and getattr(orig, "pgcode", None) == _PG_QUERY_CANCELED:
            raise OperationTimeoutError(
                "镜像库语句超时", details={"operation": operation}
            ) from exc
        raise MirrorUnavailableError(
            "镜像库操作失败", details={"operation": operation, "error": exc.__class__.__name__}
        ) from exc


class CRUDBase(Generic[ModelType]):
    """封装常见的查询、创建与保存逻辑，减少重复代码。"""

    def __init__(self, model: Type[ModelType]):
        self.model = model

    def create(self, db: Session, obj_in: Dict[str, Any], *, auto_commit: bool = True) -> ModelType:
        db_obj = self.model(**obj_in)
        db.add(db_obj)
        if auto_commit:
            db.commit()
            db.refresh(db_obj)
        else:
            db.flush()
        return db_obj

    def query(self, db: Session):
        return db.query(self.model)
