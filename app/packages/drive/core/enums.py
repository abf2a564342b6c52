"""枚举定义：约束错误类型、检索来源与节点类型筛选的可选值。"""

from enum import Enum


class ErrorKind(str, Enum):
    """目录树与检索引擎对外暴露的封闭错误集合。"""

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_PATH = "invalid_path"
    TIMEOUT = "timeout"
    STORE_UNAVAILABLE = "store_unavailable"
    MIRROR_UNAVAILABLE = "mirror_unavailable"
    PARTIAL_FAILURE = "partial_failure"
    RETRIEVAL_FAILED = "retrieval_failed"


class NodeTypeFilter(str, Enum):
    FILE = "file"
    FOLDER = "folder"
    ALL = "all"


class ResultSource(str, Enum):
    """合并结果的来源标记。"""

    BOTH = "both"
    STORE_ONLY = "store-only"
    MIRROR_ONLY = "mirror-only"


class TreeOperation(str, Enum):
    CREATE = "create"
    RENAME = "rename"
    MOVE = "move"
    DELETE = "delete"


class RetrievalStrategy(str, Enum):
    """按内容哈希取回数据的策略，按声明顺序依次尝试。"""

    SUBDOMAIN_GATEWAY = "subdomain-gateway"
    PATH_GATEWAY = "path-gateway"
    RAW_OBJECT = "raw-object"
