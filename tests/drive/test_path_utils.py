"""路径规则：规范化、owner 根目录约束与前缀替换。"""

import pytest

from app.packages.drive.core.exceptions import InvalidPathError
from app.packages.drive.utils.path_utils import (
    depth_from,
    is_same_or_descendant,
    norm_abs_path,
    resolve_owner_path,
    split_path,
    validate_content_hash,
    validate_name,
)


def test_norm_abs_path_collapses_separators():
    assert norm_abs_path("docs//a/") == "/docs/a"
    assert norm_abs_path("") == "/"
    assert norm_abs_path(None) == "/"


@pytest.mark.parametrize("raw", ["/docs/../etc", "/./a", "/a/\x00b"])
def test_norm_abs_path_rejects_escape(raw):
    with pytest.raises(InvalidPathError):
        norm_abs_path(raw)


def test_resolve_owner_path_relative_and_full():
    assert resolve_owner_path(1, "/docs") == "/users/1/docs"
    assert resolve_owner_path(1, "/users/1/docs") == "/users/1/docs"
    assert resolve_owner_path(1, "/") == "/users/1"
    assert resolve_owner_path(1, "/users/1") == "/users/1"


def test_resolve_owner_path_rejects_other_owner():
    with pytest.raises(InvalidPathError):
        resolve_owner_path(1, "/users/2/docs")
    with pytest.raises(InvalidPathError):
        resolve_owner_path(1, "/users")


@pytest.mark.parametrize("name", ["", "  ", "a/b", "..", "a\\b", "x" * 256])
def test_validate_name_rejects(name):
    with pytest.raises(InvalidPathError):
        validate_name(name)


def test_split_and_prefix_helpers():
    assert split_path("/users/1/a") == ("/users/1", "a")
    assert split_path("/a") == ("/", "a")
    assert is_same_or_descendant("/u/1/a/b", "/u/1/a")
    assert not is_same_or_descendant("/u/1/ab", "/u/1/a")
    assert depth_from("/u/1/a/b/c", "/u/1/a") == 2


def test_validate_content_hash():
    assert validate_content_hash(" bafybeigdyrzt5 ") == "bafybeigdyrzt5"
    for bad in ["", "abc/def", "../x", "a" * 129, "中文"]:
        with pytest.raises(InvalidPathError):
            validate_content_hash(bad)
