"""
tests/test_folders.py
"""
from __future__ import annotations

import sqlite3

import pytest

from borrd.press import (
    ConflictError,
    InvalidInput,
    NotFoundError,
    create_folder,
    delete_folder,
    descendant_ids,
    find_page,
    get_folder,
    move_folder,
    publish,
)


# ───────────────────────── helpers ──────────────────────────────────
def _chain(owner: str, db, *names: str) -> list[dict]:
    """Create ``names[0] > names[1] > …`` and return the rows in order."""
    made, parent = [], None
    for name in names:
        folder = create_folder(owner, name, parent, db=db)
        made.append(folder)
        parent = folder["id"]
    return made


# ─────────────────────────■  tests  ■────────────────────────────────
def test_create_and_list_sorted_by_name(client, auth):
    for name in ("Zeta", "alpha notes", "Mid_dle-1"):
        rv = client.post("/api/folders", json={"name": name}, headers=auth)
        assert rv.status_code == 201
        assert rv.get_json()["folder"]["parent_id"] is None

    rv = client.get("/api/folders", headers=auth)
    assert [f["name"] for f in rv.get_json()["folders"]] == ["Mid_dle-1", "Zeta", "alpha notes"]


@pytest.mark.parametrize("name", ["", "   ", "bad/name", "émoji", "x" * 101, None, 42])
def test_create_rejects_bad_names(client, auth, name):
    rv = client.post("/api/folders", json={"name": name}, headers=auth)
    assert rv.status_code == 400


def test_name_of_exactly_100_chars_is_fine(client, auth):
    rv = client.post("/api/folders", json={"name": "x" * 100}, headers=auth)
    assert rv.status_code == 201


def test_duplicate_sibling_name_is_rejected(client, auth):
    assert client.post("/api/folders", json={"name": "Twice"}, headers=auth).status_code == 201
    rv = client.post("/api/folders", json={"name": "Twice"}, headers=auth)
    assert rv.status_code == 400
    assert rv.get_json()["error"] == "Folder with this name already exists"


def test_same_name_allowed_under_different_parents(db, user):
    a, b = create_folder(user["id"], "A", db=db), create_folder(user["id"], "B", db=db)
    create_folder(user["id"], "Notes", a["id"], db=db)
    create_folder(user["id"], "Notes", b["id"], db=db)
    with pytest.raises(ConflictError):
        create_folder(user["id"], "Notes", a["id"], db=db)


def test_rename(client, auth, db, user):
    keep = create_folder(user["id"], "Keep", db=db)
    target = create_folder(user["id"], "Old", db=db)

    rv = client.patch(
        "/api/folders", json={"folderId": target["id"], "name": "New"}, headers=auth
    )
    assert rv.status_code == 200
    assert rv.get_json()["folder"]["name"] == "New"

    rv = client.patch(
        "/api/folders", json={"folderId": target["id"], "name": keep["name"]}, headers=auth
    )
    assert rv.status_code == 400

    rv = client.patch("/api/folders", json={"folderId": 999999, "name": "X"}, headers=auth)
    assert rv.status_code == 404


def test_move_folder_into_its_own_descendant_is_rejected(db, user):
    a, b, c, d = _chain(user["id"], db, "A", "B", "C", "D")

    with pytest.raises(InvalidInput, match="itself or its descendants"):
        move_folder(user["id"], a["id"], d["id"], db=db)
    with pytest.raises(InvalidInput, match="itself or its descendants"):
        move_folder(user["id"], b["id"], b["id"], db=db)

    assert get_folder(user["id"], a["id"], db=db)["parent_id"] is None


def test_move_folder_over_http(client, auth, db, user):
    a, b = _chain(user["id"], db, "Outer", "Inner")
    other = create_folder(user["id"], "Elsewhere", db=db)

    rv = client.post(
        "/api/move-folder",
        json={"folderId": b["id"], "targetParentId": other["id"]},
        headers=auth,
    )
    assert rv.status_code == 200
    assert get_folder(user["id"], b["id"], db=db)["parent_id"] == other["id"]

    rv = client.post(
        "/api/move-folder", json={"folderId": b["id"], "targetParentId": None}, headers=auth
    )
    assert rv.status_code == 200
    assert get_folder(user["id"], b["id"], db=db)["parent_id"] is None

    rv = client.post(
        "/api/move-folder", json={"folderId": a["id"], "targetParentId": b["id"]}, headers=auth
    )
    assert rv.status_code == 200


@pytest.mark.parametrize(
    "case, error",
    [
        ("noop", "already in that location"),
        ("missing_target", "does not exist"),
        ("collision", "already exists in the target location"),
    ],
)
def test_move_folder_rejections(db, user, case, error):
    owner = user["id"]
    parent = create_folder(owner, "Parent", db=db)
    moving = create_folder(owner, "Same", db=db)
    create_folder(owner, "Same", parent["id"], db=db)

    target = {
        "noop": None,
        "missing_target": 999999,
        "collision": parent["id"],
    }[case]
    with pytest.raises(InvalidInput, match=error):
        move_folder(owner, moving["id"], target, db=db)


def test_move_to_current_parent_is_rejected_over_http(client, auth, db, user):
    top = create_folder(user["id"], "Top level", db=db)
    rv = client.post(
        "/api/move-folder", json={"folderId": top["id"], "targetParentId": None}, headers=auth
    )
    assert rv.status_code == 400
    assert rv.get_json()["error"] == "Folder is already in that location"
    assert get_folder(user["id"], top["id"], db=db)["parent_id"] is None


def test_move_unknown_folder_is_404(client, auth, user_factory, db):
    theirs = create_folder(user_factory()["id"], "Theirs", db=db)
    rv = client.post(
        "/api/move-folder", json={"folderId": theirs["id"], "targetParentId": None}, headers=auth
    )
    assert rv.status_code == 404


def test_delete_folder_flattens_contents(client, auth, db, user):
    owner = user["id"]
    parent, doomed = _chain(owner, db, "Parent", "Doomed")
    child = create_folder(owner, "Child", doomed["id"], db=db)
    p1 = publish(owner, "inside-one", "x", doomed["id"], db=db)
    p2 = publish(owner, "inside-two", "x", doomed["id"], db=db)

    rv = client.delete(f"/api/folders?folderId={doomed['id']}", headers=auth)
    assert rv.status_code == 200

    assert get_folder(owner, doomed["id"], db=db) is None
    assert get_folder(owner, child["id"], db=db)["parent_id"] == parent["id"]
    for p in (p1, p2):
        page = find_page(owner, page_id=p["id"], db=db)
        assert page["folder_id"] is None
        assert page["deleted_at"] is None


def test_delete_folder_is_all_or_nothing(db, user, user_factory):
    owner = user["id"]
    doomed = create_folder(owner, "Doomed", db=db)
    page = publish(owner, "kept-in-place", "x", doomed["id"], db=db)

    # a row the owner-scoped reparent step cannot reach makes the final DELETE fail
    intruder = user_factory()["id"]
    db.execute(
        """INSERT INTO folders (name, parent_id, owner_id, created_at, updated_at)
           VALUES ('Intruder', ?, ?, 'now', 'now')""",
        (doomed["id"], intruder),
    )
    db.commit()

    with pytest.raises(sqlite3.IntegrityError):
        delete_folder(owner, doomed["id"], db=db)

    assert get_folder(owner, doomed["id"], db=db) is not None
    assert find_page(owner, page_id=page["id"], db=db)["folder_id"] == doomed["id"]


def test_delete_folder_errors(client, auth, db, user_factory):
    assert client.delete("/api/folders", headers=auth).status_code == 400
    assert client.delete("/api/folders?folderId=999999", headers=auth).status_code == 404

    theirs = create_folder(user_factory()["id"], "Theirs", db=db)
    assert client.delete(f"/api/folders?folderId={theirs['id']}", headers=auth).status_code == 404
    with pytest.raises(NotFoundError):
        delete_folder("nobody", theirs["id"], db=db)


def test_folder_contents(client, auth, db, user):
    owner = user["id"]
    top, sub = _chain(owner, db, "Top", "Sub")
    publish(owner, "loose", "x", db=db)
    publish(owner, "filed", "x", top["id"], db=db)

    root = client.get("/api/folder-contents", headers=auth).get_json()
    assert {f["name"] for f in root["folders"]} == {"Top", "Sub"}
    assert [p["slug"] for p in root["uncategorizedPages"]] == ["loose"]

    inside = client.get(f"/api/folder-contents?folderId={top['id']}", headers=auth).get_json()
    assert inside["folder"]["name"] == "Top"
    assert [f["name"] for f in inside["subfolders"]] == ["Sub"]
    assert [p["slug"] for p in inside["pages"]] == ["filed"]

    rv = client.get("/api/folder-contents?folderId=999999", headers=auth)
    assert rv.status_code == 404


def test_descendant_ids_survives_existing_loops():
    rows = [
        {"id": 1, "parent_id": None},
        {"id": 2, "parent_id": 1},
        {"id": 3, "parent_id": 2},
        {"id": 4, "parent_id": 5},
        {"id": 5, "parent_id": 4},
    ]
    assert descendant_ids(1, rows) == {2, 3}
    assert descendant_ids(3, rows) == set()
    assert descendant_ids(4, rows) == {5}
