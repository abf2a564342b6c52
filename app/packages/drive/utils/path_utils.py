"""Path utilities: normalize namespace paths and confine them to an owner root.

These helpers centralize the rules used across tree_service/search_service/file_service:
- A namespace path always starts with '/', never ends with '/', has no empty segments;
- Every owner lives under ``<users_root>/<owner_id>``; the owner root is implicit (not a mirror row);
- Client paths may be relative to the owner root ("/docs") or full ("/users/1/docs").
"""

from __future__ import annotations

from app.packages.drive.core.constants import MAX_HASH_LENGTH, MAX_NAME_LENGTH, MAX_PATH_LENGTH
from app.packages.drive.core.exceptions import InvalidPathError


def _has_control_chars(value: str) -> bool:
    return any(ord(ch) < 32 or ord(ch) == 127 for ch in value)


def norm_abs_path(p: str | None) -> str:
    """规范化为以 '/' 开头、不以 '/' 结尾的路径；根目录返回 '/'。

    拒绝 '.'/'..' 片段与控制字符，避免越出 owner 根目录。
    """
    raw = (p or "").strip()
    if _has_control_chars(raw):
        raise InvalidPathError("路径包含非法字符", details={"path": raw})
    segments = [seg for seg in raw.split("/") if seg]
    for seg in segments:
        if seg in {".", ".."}:
            raise InvalidPathError("路径不能包含 '.' 或 '..'", details={"path": raw})
    normalized = "/" + "/".join(segments)
    if len(normalized) > MAX_PATH_LENGTH:
        raise InvalidPathError("路径过长", details={"path": raw})
    return normalized


def owner_root(owner_id: int, users_root: str = "/users") -> str:
    return f"{norm_abs_path(users_root).rstrip('/')}/{int(owner_id)}"


def resolve_owner_path(owner_id: int, raw: str | None, users_root: str = "/users") -> str:
    """将客户端路径解析为 owner 命名空间内的绝对路径。

    - 以 owner 根目录开头的路径原样使用；
    - 以 users 根目录开头但属于其他 owner 的路径视为越权；
    - 其余按相对 owner 根目录处理。
    """
    root = owner_root(owner_id, users_root)
    path = norm_abs_path(raw)
    if path == root or path.startswith(root + "/"):
        return path
    users_prefix = norm_abs_path(users_root)
    if path == users_prefix or path.startswith(users_prefix.rstrip("/") + "/"):
        raise InvalidPathError("路径超出当前用户的根目录", details={"path": raw})
    if path == "/":
        return root
    resolved = root + path
    if len(resolved) > MAX_PATH_LENGTH:
        raise InvalidPathError("路径过长", details={"path": raw})
    return resolved


def validate_name(name: str | None) -> str:
    """校验叶子名称：非空、不含分隔符与控制字符、长度受限。"""
    value = (name or "").strip()
    if not value:
        raise InvalidPathError("名称不能为空")
    if "/" in value or "\\" in value:
        raise InvalidPathError("名称不能包含路径分隔符", details={"name": value})
    if value in {".", ".."} or _has_control_chars(value):
        raise InvalidPathError("名称包含非法字符", details={"name": value})
    if len(value) > MAX_NAME_LENGTH:
        raise InvalidPathError("名称过长", details={"name": value})
    return value


def join_path(parent: str, name: str) -> str:
    return f"{parent.rstrip('/')}/{name}"


def split_path(path: str) -> tuple[str, str]:
    """拆分为 (parent_path, name)；'/a' -> ('/', 'a')。"""
    parent, _, name = path.rstrip("/").rpartition("/")
    return (parent or "/"), name


def is_same_or_descendant(path: str, ancestor: str) -> bool:
    return path == ancestor or path.startswith(ancestor.rstrip("/") + "/")


def relative_to(path: str, base: str) -> str:
    """返回 path 相对 base 的部分（不含前导 '/'）；不在 base 下时原样返回去掉前导 '/' 的 path。"""
    if path == base:
        return ""
    if path.startswith(base.rstrip("/") + "/"):
        return path[len(base.rstrip("/")) + 1:]
    return path.lstrip("/")


def depth_from(path: str, base: str) -> int:
    """path 相对 base 的层级：直接子项为 1。"""
    rel = relative_to(path, base)
    return len([seg for seg in rel.split("/") if seg])


def validate_content_hash(value: str | None) -> str:
    """校验内容哈希格式：非空、仅字母数字、长度受限；在发起任何请求前调用。"""
    candidate = (value or "").strip()
    if not candidate or len(candidate) > MAX_HASH_LENGTH or not candidate.isascii() or not candidate.isalnum():
        raise InvalidPathError("内容哈希格式不合法", details={"hash": value})
    return candidate
