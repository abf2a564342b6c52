"""目录树镜像节点模型（文件与文件夹合并为一张表）。

存储规则：
- path：owner 命名空间内的绝对路径，以 '/' 开头、不以 '/' 结尾，例如 "/users/1/docs/a.txt"；
- parent_path：所在文件夹路径；顶层节点的父路径为 owner 根目录（"/users/1"），根目录本身不入库；
- path 恒等于 parent_path + "/" + name；
- content_hash：文件为对象哈希；文件夹为创建时的目录哈希，仅供参考，不随子项变化刷新；
- 对于文件：size_bytes/mime_type 有意义；文件夹则 size_bytes=0、mime_type=NULL。
"""

from typing import Optional

from sqlalchemy import BigInteger, Boolean, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.packages.drive.models.base import Base, TimestampMixin


class FileNode(TimestampMixin, Base):
    __tablename__ = "file_nodes"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    owner_id: Mapped[int] = mapped_column(Integer, index=True)
    path: Mapped[str] = mapped_column(String(1024), index=True)
    parent_path: Mapped[str] = mapped_column(String(1024), index=True)
    name: Mapped[str] = mapped_column(String(255), index=True)
    is_folder: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    content_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    mime_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("owner_id", "path", name="uq_file_nodes_owner_path"),
    )
