"""FileNode CRUD：镜像库的路径查询与集合式改写。"""

from __future__ import annotations

from typing import Iterable, Optional

from sqlalchemy import and_, delete, func, literal, or_, select, update
from sqlalchemy.orm import Session

from app.packages.drive.core.enums import NodeTypeFilter
from app.packages.drive.crud.base import CRUDBase
from app.packages.drive.models.file_node import FileNode

LIKE_ESCAPE = "\\"


def like_escape(value: str) -> str:
    """转义 LIKE 通配符，保证路径/名称按字面匹配。"""
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


def _descendant_pattern(path: str) -> str:
    return like_escape(path.rstrip("/")) + "/%"


def _descendant_clause(path: str):
    """严格的后代条件：LIKE 便于走索引，substr 比较保证大小写敏感（SQLite 的 LIKE 不区分大小写）。"""
    prefix = path.rstrip("/") + "/"
    return and_(
        FileNode.path.like(_descendant_pattern(path), escape=LIKE_ESCAPE),
        func.substr(FileNode.path, 1, len(prefix)) == prefix,
    )


class CRUDFileNode(CRUDBase[FileNode]):
    def get_by_path(self, db: Session, *, owner_id: int, path: str) -> FileNode | None:
        return (
            self.query(db)
            .filter(FileNode.owner_id == owner_id)
            .filter(FileNode.path == path)
            .first()
        )

    def get_by_paths(self, db: Session, *, owner_id: int, paths: Iterable[str]) -> dict[str, FileNode]:
        wanted = list(dict.fromkeys(paths))
        if not wanted:
            return {}
        rows = (
            self.query(db)
            .filter(FileNode.owner_id == owner_id)
            .filter(FileNode.path.in_(wanted))
            .all()
        )
        return {row.path: row for row in rows}

    def children(self, db: Session, *, owner_id: int, parent_path: str) -> list[FileNode]:
        """直接子节点（基于 parent_path 索引）。"""
        return (
            self.query(db)
            .filter(FileNode.owner_id == owner_id)
            .filter(FileNode.parent_path == parent_path)
            .order_by(FileNode.is_folder.desc(), FileNode.name.asc())
            .all()
        )

    def descendants(self, db: Session, *, owner_id: int, path: str) -> list[FileNode]:
        """所有后代节点（path 前缀匹配，不含自身）。"""
        return (
            self.query(db)
            .filter(FileNode.owner_id == owner_id)
            .filter(_descendant_clause(path))
            .order_by(FileNode.path.asc())
            .all()
        )

    def count_descendants(self, db: Session, *, owner_id: int, path: str) -> int:
        """后代节点数量（不含自身），在数据库内聚合计数。"""
        stmt = (
            select(func.count())
            .select_from(FileNode)
            .where(FileNode.owner_id == owner_id)
            .where(_descendant_clause(path))
        )
        return int(db.execute(stmt).scalar_one())

    def search_names(
        self,
        db: Session,
        *,
        owner_id: int,
        query: str,
        scope: str,
        recursive: bool,
        type_filter: Optional[NodeTypeFilter] = None,
    ) -> list[FileNode]:
        """名称包含匹配（按 ``str.casefold`` 不区分大小写），限定 owner 与作用域。

        recursive=True 时匹配 scope 下任意层级；否则仅匹配 scope 的直接子项。
        SQLite 的 ILIKE 只折叠 ASCII，因此 ILIKE 仅用于纯 ASCII 关键字的预筛选，
        最终匹配统一在 Python 侧完成，与存储侧遍历的折叠规则一致。
        """
        q = self.query(db).filter(FileNode.owner_id == owner_id)
        if query.isascii():
            q = q.filter(FileNode.name.ilike(f"%{like_escape(query)}%", escape=LIKE_ESCAPE))
        if recursive:
            q = q.filter(_descendant_clause(scope))
        else:
            q = q.filter(FileNode.parent_path == scope)
        if type_filter == NodeTypeFilter.FOLDER:
            q = q.filter(FileNode.is_folder.is_(True))
        elif type_filter == NodeTypeFilter.FILE:
            q = q.filter(FileNode.is_folder.is_(False))
        folded = query.casefold()
        return [row for row in q.order_by(FileNode.name.asc()).all() if folded in row.name.casefold()]

    def rewrite_prefix(self, db: Session, *, owner_id: int, old_prefix: str, new_prefix: str) -> int:
        """以单条 UPDATE 将所有后代的 path/parent_path 前缀 old_prefix 替换为 new_prefix。

        不提交事务；返回受影响行数。节点自身的行由调用方单独更新。
        """
        cut = len(old_prefix) + 1
        stmt = (
            update(FileNode)
            .where(FileNode.owner_id == owner_id)
            .where(_descendant_clause(old_prefix))
            .values(
                path=literal(new_prefix).concat(func.substr(FileNode.path, cut)),
                parent_path=literal(new_prefix).concat(func.substr(FileNode.parent_path, cut)),
            )
            .execution_options(synchronize_session=False)
        )
        return db.execute(stmt).rowcount or 0

    def delete_subtree(self, db: Session, *, owner_id: int, path: str) -> int:
        """以单条 DELETE 删除节点自身及全部后代；不提交事务。"""
        stmt = (
            delete(FileNode)
            .where(FileNode.owner_id == owner_id)
            .where(
                or_(
                    FileNode.path == path,
                    _descendant_clause(path),
                )
            )
            .execution_options(synchronize_session=False)
        )
        return db.execute(stmt).rowcount or 0


file_node_crud = CRUDFileNode(FileNode)
