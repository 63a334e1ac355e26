"""文件接口的集成测试：覆盖目录树、上传下载、回收站与批量操作的完整流程。"""

from __future__ import annotations

import io
import zipfile
from typing import Optional

from fastapi.testclient import TestClient

from app.packages.drive.models.fs_node import FsNode
from app.packages.drive.models.user import User

API = "/api/v1/files"


def _create_folder(client: TestClient, headers: dict, name: str, parent_id: Optional[int] = None):
    return client.post(f"{API}/folders", headers=headers, json={"name": name, "parentId": parent_id})


def _upload(
    client: TestClient,
    headers: dict,
    name: str,
    content: bytes,
    *,
    parent_id: Optional[int] = None,
    relative_path: Optional[str] = None,
):
    data = {}
    if parent_id is not None:
        data["parentId"] = str(parent_id)
    if relative_path:
        data["relativePath"] = relative_path
    return client.post(
        f"{API}/upload",
        headers=headers,
        files={"file": (name, io.BytesIO(content), "text/plain")},
        data=data,
    )


def _zip_bytes(entries: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return buf.getvalue()


def _storage_used(db, user: User) -> int:
    db.expire_all()
    return db.get(User, user.id).storage_used


def test_requires_bearer_token(client: TestClient):
    resp = client.get(API)
    assert resp.status_code == 401
    body = resp.json()
    assert body["code"] == 401
    assert body["data"] is None


def test_inactive_user_is_forbidden(client: TestClient, make_user, headers_for):
    inactive = make_user(is_active=False)
    resp = client.get(API, headers=headers_for(inactive))
    assert resp.status_code == 403


def test_folder_tree_listing_and_breadcrumbs(client: TestClient, auth_headers):
    docs = _create_folder(client, auth_headers, "Docs")
    assert docs.status_code == 201
    assert docs.json()["code"] == 201
    docs_id = docs.json()["data"]["id"]

    reports = _create_folder(client, auth_headers, "Reports", docs_id).json()["data"]
    upload = _upload(client, auth_headers, "q1.txt", b"quarter one", parent_id=reports["id"])
    assert upload.status_code == 201
    file_data = upload.json()["data"]
    assert file_data["type"] == "file"
    assert file_data["size"] == len(b"quarter one")
    assert file_data["mimeType"] == "text/plain"

    root_listing = client.get(API, headers=auth_headers).json()["data"]
    assert [n["name"] for n in root_listing] == ["Docs"]

    detail = client.get(f"{API}/{file_data['id']}", headers=auth_headers).json()["data"]
    assert detail["node"]["name"] == "q1.txt"
    assert [b["name"] for b in detail["breadcrumbs"]] == ["Docs", "Reports"]

    folders = client.get(f"{API}/folders", headers=auth_headers).json()["data"]
    assert {f["name"] for f in folders} == {"Docs", "Reports"}


def test_listing_puts_folders_first(client: TestClient, auth_headers):
    _upload(client, auth_headers, "alpha.txt", b"a")
    _create_folder(client, auth_headers, "zeta")
    _upload(client, auth_headers, "Beta.txt", b"bb")

    names = [n["name"] for n in client.get(API, headers=auth_headers).json()["data"]]
    assert names == ["zeta", "alpha.txt", "Beta.txt"]

    by_size = client.get(API, headers=auth_headers, params={"orderBy": "size", "order": "desc"}).json()["data"]
    assert [n["name"] for n in by_size] == ["zeta", "Beta.txt", "alpha.txt"]


def test_duplicate_folder_name_conflicts(client: TestClient, auth_headers):
    assert _create_folder(client, auth_headers, "A").status_code == 201
    second = _create_folder(client, auth_headers, "A")
    assert second.status_code == 409
    names = [n["name"] for n in client.get(API, headers=auth_headers).json()["data"]]
    assert names.count("A") == 1


def test_invalid_names_are_rejected(client: TestClient, auth_headers):
    assert _create_folder(client, auth_headers, "a/b").status_code == 400
    assert _create_folder(client, auth_headers, "..").status_code == 400
    assert _create_folder(client, auth_headers, "   ").status_code == 400


def test_unknown_parent_is_not_found(client: TestClient, auth_headers):
    assert _create_folder(client, auth_headers, "orphan", 999999).status_code == 404


def test_move_into_own_descendant_is_rejected(client: TestClient, auth_headers):
    a_id = _create_folder(client, auth_headers, "A").json()["data"]["id"]
    b_id = _create_folder(client, auth_headers, "B", a_id).json()["data"]["id"]

    resp = client.post(f"{API}/{a_id}/move", headers=auth_headers, json={"parentId": b_id})
    assert resp.status_code == 400
    self_move = client.post(f"{API}/{a_id}/move", headers=auth_headers, json={"parentId": a_id})
    assert self_move.status_code == 400

    b_detail = client.get(f"{API}/{b_id}", headers=auth_headers).json()["data"]
    assert b_detail["node"]["parentId"] == a_id
    a_detail = client.get(f"{API}/{a_id}", headers=auth_headers).json()["data"]
    assert a_detail["node"]["parentId"] is None


def test_rename_and_move_keep_blob_key(client: TestClient, auth_headers, db_session_fixture):
    target_id = _create_folder(client, auth_headers, "Archive").json()["data"]["id"]
    file_id = _upload(client, auth_headers, "draft.txt", b"draft body").json()["data"]["id"]
    key_before = db_session_fixture.get(FsNode, file_id).storage_key

    renamed = client.patch(f"{API}/{file_id}", headers=auth_headers, json={"name": "final.txt"})
    assert renamed.status_code == 200
    assert renamed.json()["data"]["name"] == "final.txt"

    moved = client.post(f"{API}/{file_id}/move", headers=auth_headers, json={"parentId": target_id})
    assert moved.status_code == 200
    assert moved.json()["data"]["parentId"] == target_id

    db_session_fixture.expire_all()
    assert db_session_fixture.get(FsNode, file_id).storage_key == key_before

    back = client.post(f"{API}/{file_id}/move", headers=auth_headers, json={"parentId": None})
    assert back.json()["data"]["parentId"] is None


def test_rename_to_sibling_name_conflicts(client: TestClient, auth_headers):
    _upload(client, auth_headers, "one.txt", b"1")
    two_id = _upload(client, auth_headers, "two.txt", b"2").json()["data"]["id"]
    resp = client.patch(f"{API}/{two_id}", headers=auth_headers, json={"name": "one.txt"})
    assert resp.status_code == 409


def test_upload_over_quota_leaves_nothing_behind(client: TestClient, make_user, headers_for, blob_store, db_session_fixture):
    small = make_user(storage_limit=1000)
    headers = headers_for(small)

    resp = _upload(client, headers, "big.bin", b"x" * 1500)
    assert resp.status_code == 403
    assert resp.json()["data"]["limit"] == 1000

    assert _storage_used(db_session_fixture, small) == 0
    assert client.get(API, headers=headers).json()["data"] == []
    assert list(blob_store.list_keys("users/")) == []


def test_upload_with_relative_path_creates_folders(client: TestClient, auth_headers):
    first = _upload(client, auth_headers, "a.txt", b"aaa", relative_path="photos/2024/a.txt")
    assert first.status_code == 201
    second = _upload(client, auth_headers, "b.txt", b"bbb", relative_path="photos/2024/b.txt")
    assert second.status_code == 201
    assert first.json()["data"]["parentId"] == second.json()["data"]["parentId"]

    folders = client.get(f"{API}/folders", headers=auth_headers).json()["data"]
    assert sorted(f["name"] for f in folders) == ["2024", "photos"]


def test_upload_duplicate_name_conflicts_without_orphan(client: TestClient, auth_headers, blob_store):
    assert _upload(client, auth_headers, "same.txt", b"first").status_code == 201
    resp = _upload(client, auth_headers, "same.txt", b"second")
    assert resp.status_code == 409
    assert len(list(blob_store.list_keys("users/"))) == 1


def test_trash_and_restore_cascade_keeps_quota(client: TestClient, user, auth_headers, db_session_fixture):
    folder_id = _create_folder(client, auth_headers, "A").json()["data"]["id"]
    file_id = _upload(client, auth_headers, "x.txt", b"0123456789", parent_id=folder_id).json()["data"]["id"]
    assert _storage_used(db_session_fixture, user) == 10

    trashed = client.patch(f"{API}/{folder_id}/trash", headers=auth_headers)
    assert trashed.json()["data"]["count"] == 2
    assert client.get(f"{API}/{file_id}", headers=auth_headers).json()["data"]["node"]["isTrash"] is True
    assert _storage_used(db_session_fixture, user) == 10

    trash_view = client.get(f"{API}/trash", headers=auth_headers).json()["data"]
    assert [n["id"] for n in trash_view] == [folder_id]
    assert client.get(API, headers=auth_headers).json()["data"] == []

    restored = client.post(f"{API}/{folder_id}/restore", headers=auth_headers)
    assert restored.json()["data"]["count"] == 2
    assert client.get(f"{API}/{file_id}", headers=auth_headers).json()["data"]["node"]["isTrash"] is False
    assert _storage_used(db_session_fixture, user) == 10


def test_trashed_node_cannot_be_renamed(client: TestClient, auth_headers):
    file_id = _upload(client, auth_headers, "gone.txt", b"g").json()["data"]["id"]
    client.patch(f"{API}/{file_id}/trash", headers=auth_headers)
    assert client.patch(f"{API}/{file_id}", headers=auth_headers, json={"name": "x.txt"}).status_code == 404


def test_permanent_delete_releases_quota_and_blob(client: TestClient, user, auth_headers, blob_store, db_session_fixture):
    folder_id = _create_folder(client, auth_headers, "tmp").json()["data"]["id"]
    _upload(client, auth_headers, "a.txt", b"12345", parent_id=folder_id)
    _upload(client, auth_headers, "b.txt", b"1234567", parent_id=folder_id)
    assert _storage_used(db_session_fixture, user) == 12

    resp = client.delete(f"{API}/{folder_id}", headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["count"] == 3
    assert _storage_used(db_session_fixture, user) == 0
    assert list(blob_store.list_keys("users/")) == []
    assert client.get(f"{API}/{folder_id}", headers=auth_headers).status_code == 404


def test_empty_trash(client: TestClient, user, auth_headers, db_session_fixture):
    keep_id = _upload(client, auth_headers, "keep.txt", b"keep").json()["data"]["id"]
    drop_id = _upload(client, auth_headers, "drop.txt", b"dropped").json()["data"]["id"]
    client.patch(f"{API}/{drop_id}/trash", headers=auth_headers)

    resp = client.delete(f"{API}/trash/empty", headers=auth_headers)
    assert resp.json()["data"]["count"] == 1
    assert client.get(f"{API}/trash", headers=auth_headers).json()["data"] == []
    assert client.get(f"{API}/{keep_id}", headers=auth_headers).status_code == 200
    assert _storage_used(db_session_fixture, user) == len(b"keep")


def test_star_toggle_and_bulk_star(client: TestClient, auth_headers):
    a_id = _upload(client, auth_headers, "a.txt", b"a").json()["data"]["id"]
    b_id = _upload(client, auth_headers, "b.txt", b"b").json()["data"]["id"]

    toggled = client.patch(f"{API}/{a_id}/star", headers=auth_headers).json()["data"]
    assert toggled == {"id": a_id, "isStarred": True}

    bulk = client.post(f"{API}/bulk-star", headers=auth_headers, json={"ids": [a_id, b_id, 424242], "starred": True})
    assert bulk.json()["data"]["count"] == 1

    starred = client.get(f"{API}/starred", headers=auth_headers).json()["data"]
    assert {n["id"] for n in starred} == {a_id, b_id}

    filtered = client.get(API, headers=auth_headers, params={"filter": "starred"}).json()["data"]
    assert {n["id"] for n in filtered} == {a_id, b_id}


def test_bulk_operations_are_idempotent(client: TestClient, user, auth_headers, db_session_fixture):
    ids = [_upload(client, auth_headers, f"f{i}.txt", b"x" * (i + 1)).json()["data"]["id"] for i in range(3)]

    first = client.post(f"{API}/bulk-trash", headers=auth_headers, json={"ids": ids + [ids[0]]})
    assert first.json()["data"]["count"] == 3
    again = client.post(f"{API}/bulk-trash", headers=auth_headers, json={"ids": ids})
    assert again.json()["data"]["count"] == 0

    restored = client.post(f"{API}/bulk-restore", headers=auth_headers, json={"ids": ids[:2]})
    assert restored.json()["data"]["count"] == 2

    deleted = client.post(f"{API}/bulk-delete", headers=auth_headers, json={"ids": ids})
    assert deleted.json()["data"]["count"] == 3
    repeat = client.post(f"{API}/bulk-delete", headers=auth_headers, json={"ids": ids})
    assert repeat.json()["data"]["count"] == 0
    assert _storage_used(db_session_fixture, user) == 0


def test_other_users_nodes_are_invisible(client: TestClient, make_user, headers_for):
    owner = make_user()
    intruder = make_user()
    owner_headers = headers_for(owner)
    intruder_headers = headers_for(intruder)

    file_id = _upload(client, owner_headers, "secret.txt", b"secret").json()["data"]["id"]

    assert client.get(f"{API}/{file_id}", headers=intruder_headers).status_code == 404
    assert client.delete(f"{API}/{file_id}", headers=intruder_headers).status_code == 404
    bulk = client.post(f"{API}/bulk-delete", headers=intruder_headers, json={"ids": [file_id]})
    assert bulk.json()["data"]["count"] == 0
    assert client.get(f"{API}/{file_id}", headers=owner_headers).status_code == 200


def test_search_is_case_insensitive(client: TestClient, auth_headers):
    _upload(client, auth_headers, "Budget-2024.xlsx", b"b")
    _upload(client, auth_headers, "notes.md", b"n")
    trashed_id = _upload(client, auth_headers, "old-budget.txt", b"o").json()["data"]["id"]
    client.patch(f"{API}/{trashed_id}/trash", headers=auth_headers)

    results = client.get(f"{API}/search", headers=auth_headers, params={"q": "BUDGET"}).json()["data"]
    assert [n["name"] for n in results] == ["Budget-2024.xlsx"]
    assert client.get(f"{API}/search", headers=auth_headers, params={"q": " "}).json()["data"] == []


def test_storage_usage(client: TestClient, make_user, headers_for):
    owner = make_user(storage_limit=200)
    headers = headers_for(owner)
    _upload(client, headers, "half.bin", b"x" * 100)

    usage = client.get(f"{API}/storage", headers=headers).json()["data"]
    assert usage == {"used": 100, "limit": 200, "percent": 50}


def test_stream_supports_ranges(client: TestClient, auth_headers):
    content = b"0123456789abcdef"
    file_id = _upload(client, auth_headers, "hex.txt", content).json()["data"]["id"]

    full = client.get(f"{API}/{file_id}/stream", headers=auth_headers)
    assert full.status_code == 200
    assert full.content == content
    assert full.headers["accept-ranges"] == "bytes"

    partial = client.get(f"{API}/{file_id}/stream", headers={**auth_headers, "Range": "bytes=4-7"})
    assert partial.status_code == 206
    assert partial.content == b"4567"
    assert partial.headers["content-range"] == f"bytes 4-7/{len(content)}"

    suffix = client.get(f"{API}/{file_id}/stream", headers={**auth_headers, "Range": "bytes=-3"})
    assert suffix.content == b"def"

    unsatisfiable = client.get(f"{API}/{file_id}/stream", headers={**auth_headers, "Range": "bytes=100-"})
    assert unsatisfiable.status_code == 416
    assert unsatisfiable.headers["content-range"] == f"bytes */{len(content)}"


def test_stream_folder_is_not_found(client: TestClient, auth_headers):
    folder_id = _create_folder(client, auth_headers, "music").json()["data"]["id"]
    assert client.get(f"{API}/{folder_id}/stream", headers=auth_headers).status_code == 404


def test_download_link_round_trip(client: TestClient, auth_headers):
    content = "汇报材料".encode("utf-8") * 10
    file_id = _upload(client, auth_headers, "report.txt", content).json()["data"]["id"]

    link = client.get(f"{API}/{file_id}/download", headers=auth_headers).json()["data"]
    assert link["name"] == "report.txt"
    assert link["url"].startswith(f"{API}/blob?t=")

    downloaded = client.get(link["url"])
    assert downloaded.status_code == 200
    assert downloaded.content == content
    assert downloaded.headers["content-disposition"].startswith("attachment;")

    ranged = client.get(link["url"], headers={"Range": "bytes=0-2"})
    assert ranged.status_code == 206
    assert ranged.content == content[:3]


def test_blob_link_rejects_bad_token(client: TestClient):
    assert client.get(f"{API}/blob", params={"t": "not-a-token"}).status_code == 401


def test_zip_upload_over_quota_creates_nothing(client: TestClient, make_user, headers_for):
    owner = make_user(storage_limit=10)
    headers = headers_for(owner)
    archive = _zip_bytes({"a.txt": b"x" * 5, "dir/b.txt": b"y" * 7})

    resp = client.post(
        f"{API}/upload-zip",
        headers=headers,
        files={"file": ("bundle.zip", io.BytesIO(archive), "application/zip")},
    )
    assert resp.status_code == 403
    assert client.get(f"{API}/folders", headers=headers).json()["data"] == []
    assert client.get(API, headers=headers).json()["data"] == []


def test_zip_upload_imports_tree(client: TestClient, user, auth_headers, db_session_fixture):
    target_id = _create_folder(client, auth_headers, "imports").json()["data"]["id"]
    archive = _zip_bytes({"a.txt": b"x" * 5, "dir/b.txt": b"y" * 7, "dir/sub/c.txt": b"z"})

    resp = client.post(
        f"{API}/upload-zip",
        headers=auth_headers,
        files={"file": ("bundle.zip", io.BytesIO(archive), "application/zip")},
        data={"parentId": str(target_id)},
    )
    assert resp.status_code == 201
    assert resp.json()["data"] == {"createdCount": 5}
    assert _storage_used(db_session_fixture, user) == 13

    children = client.get(API, headers=auth_headers, params={"parentId": target_id}).json()["data"]
    assert [n["name"] for n in children] == ["dir", "a.txt"]


def test_validation_errors_use_envelope(client: TestClient, auth_headers):
    resp = client.post(f"{API}/folders", headers=auth_headers, json={})
    assert resp.status_code == 422
    body = resp.json()
    assert body["code"] == 422
    assert isinstance(body["data"], list)


def test_request_id_is_echoed(client: TestClient, auth_headers):
    resp = client.get(API, headers={**auth_headers, "X-Request-ID": "trace-123"})
    assert resp.headers["x-request-id"] == "trace-123"
    assert client.get("/health").headers.get("x-request-id")


def test_health_and_ready(client: TestClient):
    assert client.get("/health").json()["data"] == {"status": "healthy"}
    ready = client.get("/ready")
    assert ready.status_code == 200
    assert ready.json()["data"]["checks"] == {"database": True, "storage": True}


def test_ready_reports_storage_outage(client: TestClient, blob_store, monkeypatch):
    from app.packages.drive.core.exceptions import StorageReadError

    def _down() -> None:
        raise StorageReadError()

    monkeypatch.setattr(blob_store, "health_check", _down)
    resp = client.get("/ready")
    assert resp.status_code == 503
    assert resp.json()["data"]["checks"]["storage"] is False
