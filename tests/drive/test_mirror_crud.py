"""镜像库 CRUD：集合式前缀改写、子树删除与名称搜索。"""

import pytest

from app.packages.drive.core.enums import NodeTypeFilter
from app.packages.drive.core.exceptions import MirrorUnavailableError
from app.packages.drive.crud.base import translate_db_errors
from app.packages.drive.crud.file_node import file_node_crud, like_escape
from app.packages.drive.utils.path_utils import split_path

OWNER = 1


def _add(db, path, *, folder=False, owner=OWNER):
    parent, name = split_path(path)
    return file_node_crud.create(
        db,
        {
            "owner_id": owner,
            "path": path,
            "parent_path": parent,
            "name": name,
            "is_folder": folder,
            "content_hash": "h" + name.replace(".", ""),
            "size_bytes": 0 if folder else 3,
            "mime_type": None if folder else "text/plain",
        },
        auto_commit=False,
    )


def _seed(db):
    _add(db, "/users/1/docs", folder=True)
    _add(db, "/users/1/docs/a.txt")
    _add(db, "/users/1/docs/sub", folder=True)
    _add(db, "/users/1/docs/sub/b.txt")
    _add(db, "/users/1/docsx", folder=True)
    _add(db, "/users/1/Docs", folder=True)
    _add(db, "/users/1/Docs/c.txt")
    _add(db, "/users/2/docs", folder=True, owner=2)
    _add(db, "/users/2/docs/a.txt", owner=2)
    db.commit()


def test_like_escape():
    assert like_escape("50%_off\\") == "50\\%\\_off\\\\"


def test_rewrite_prefix_touches_only_descendants(db_session_fixture):
    db = db_session_fixture
    _seed(db)

    count = file_node_crud.rewrite_prefix(db, owner_id=OWNER, old_prefix="/users/1/docs", new_prefix="/users/1/notes")
    db.commit()

    assert count == 3
    paths = {n.path: n.parent_path for n in file_node_crud.query(db).filter_by(owner_id=OWNER).all()}
    assert paths["/users/1/notes/a.txt"] == "/users/1/notes"
    assert paths["/users/1/notes/sub"] == "/users/1/notes"
    assert paths["/users/1/notes/sub/b.txt"] == "/users/1/notes/sub"
    # 节点自身由调用方更新；同前缀兄弟与大小写不同的节点不受影响
    assert "/users/1/docs" in paths
    assert "/users/1/docsx" in paths
    assert "/users/1/Docs/c.txt" in paths
    assert file_node_crud.get_by_path(db, owner_id=2, path="/users/2/docs/a.txt") is not None


def test_delete_subtree(db_session_fixture):
    db = db_session_fixture
    _seed(db)

    removed = file_node_crud.delete_subtree(db, owner_id=OWNER, path="/users/1/docs")
    db.commit()

    assert removed == 4
    remaining = {n.path for n in file_node_crud.query(db).filter_by(owner_id=OWNER).all()}
    assert remaining == {"/users/1/docsx", "/users/1/Docs", "/users/1/Docs/c.txt"}


def test_children_and_descendants(db_session_fixture):
    db = db_session_fixture
    _seed(db)

    children = file_node_crud.children(db, owner_id=OWNER, parent_path="/users/1/docs")
    assert [c.name for c in children] == ["sub", "a.txt"]
    descendants = file_node_crud.descendants(db, owner_id=OWNER, path="/users/1/docs")
    assert [d.path for d in descendants] == [
        "/users/1/docs/a.txt",
        "/users/1/docs/sub",
        "/users/1/docs/sub/b.txt",
    ]


def test_search_names_scope_and_filter(db_session_fixture):
    db = db_session_fixture
    _seed(db)

    hits = file_node_crud.search_names(
        db, owner_id=OWNER, query="TXT", scope="/users/1/docs", recursive=True
    )
    assert {h.path for h in hits} == {"/users/1/docs/a.txt", "/users/1/docs/sub/b.txt"}

    shallow = file_node_crud.search_names(
        db, owner_id=OWNER, query="txt", scope="/users/1/docs", recursive=False
    )
    assert [h.path for h in shallow] == ["/users/1/docs/a.txt"]

    folders = file_node_crud.search_names(
        db,
        owner_id=OWNER,
        query="s",
        scope="/users/1",
        recursive=True,
        type_filter=NodeTypeFilter.FOLDER,
    )
    assert all(h.is_folder for h in folders)
    # 作用域自身不计入结果
    scoped = file_node_crud.search_names(
        db, owner_id=OWNER, query="docs", scope="/users/1/docs", recursive=True
    )
    assert scoped == []


def test_search_names_folds_non_ascii_case(db_session_fixture):
    db = db_session_fixture
    _add(db, "/users/1/ÄRGER.txt")
    _add(db, "/users/1/Straße.txt")
    _add(db, "/users/1/other.txt")
    db.commit()

    hits = file_node_crud.search_names(db, owner_id=OWNER, query="ärger", scope="/users/1", recursive=True)
    assert [h.name for h in hits] == ["ÄRGER.txt"]
    hits = file_node_crud.search_names(db, owner_id=OWNER, query="straß", scope="/users/1", recursive=True)
    assert [h.name for h in hits] == ["Straße.txt"]


def test_count_descendants(db_session_fixture):
    db = db_session_fixture
    _seed(db)

    assert file_node_crud.count_descendants(db, owner_id=OWNER, path="/users/1/docs") == 3
    assert file_node_crud.count_descendants(db, owner_id=OWNER, path="/users/1/Docs") == 1
    assert file_node_crud.count_descendants(db, owner_id=OWNER, path="/users/1/docs/a.txt") == 0


def test_search_names_treats_wildcards_literally(db_session_fixture):
    db = db_session_fixture
    _add(db, "/users/1/100%_done.txt")
    _add(db, "/users/1/1000 done.txt")
    db.commit()

    hits = file_node_crud.search_names(db, owner_id=OWNER, query="%_", scope="/users/1", recursive=True)
    assert [h.name for h in hits] == ["100%_done.txt"]


def test_unique_path_violation_maps_to_mirror_error(db_session_fixture):
    db = db_session_fixture
    _add(db, "/users/1/a.txt")
    db.commit()

    with pytest.raises(MirrorUnavailableError):
        with translate_db_errors("create"):
            _add(db, "/users/1/a.txt")
    db.rollback()
