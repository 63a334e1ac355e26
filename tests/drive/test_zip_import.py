"""压缩包导入测试：整体配额预检、非法路径、目录复用与中途失败后的账本。"""

from __future__ import annotations

import io
import zipfile

import pytest

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.exceptions import AppException, NameConflictError, QuotaExceededError
from app.packages.drive.crud.fs_node import fs_node_crud
from app.packages.drive.models.fs_node import FsNode
from app.packages.drive.services.file_service import file_service
from app.packages.drive.services.zip_import import zip_import_service


def _archive(entries: dict[str, bytes]) -> io.BytesIO:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    buf.seek(0)
    return buf


def _import(db, user, entries, parent_id=None, filename="bundle.zip"):
    return zip_import_service.import_archive(
        db, user, stream=_archive(entries), filename=filename, parent_id=parent_id
    )


def _node_count(db, user) -> int:
    return db.query(FsNode).filter(FsNode.user_id == user.id).count()


def test_archive_over_quota_is_rejected_entirely(db_session_fixture, make_user, blob_store):
    owner = make_user(storage_limit=10)

    with pytest.raises(QuotaExceededError):
        _import(db_session_fixture, owner, {"a.txt": b"x" * 5, "dir/b.txt": b"y" * 7})

    assert _node_count(db_session_fixture, owner) == 0
    assert list(blob_store.list_keys("users/")) == []


def test_archive_within_quota_creates_folders_and_files(db_session_fixture, user):
    db = db_session_fixture
    created = _import(db, user, {"a.txt": b"x" * 5, "dir/b.txt": b"y" * 7, "dir/": b""})

    assert created == 3
    db.refresh(user)
    assert user.storage_used == 12
    folder = fs_node_crud.get_live_sibling(db, user_id=user.id, parent_id=None, name="dir")
    assert folder is not None and folder.is_folder
    child = fs_node_crud.get_live_sibling(db, user_id=user.id, parent_id=folder.id, name="b.txt")
    assert child.size_bytes == 7
    assert child.mime_type == "text/plain"


def test_existing_folders_are_reused(db_session_fixture, user):
    db = db_session_fixture
    target = file_service.create_folder(db, user, name="target")
    existing = file_service.create_folder(db, user, name="docs", parent_id=target.id)

    created = _import(db, user, {"docs/readme.md": b"# hi"}, parent_id=target.id)

    assert created == 1
    readme = fs_node_crud.get_live_sibling(db, user_id=user.id, parent_id=existing.id, name="readme.md")
    assert readme is not None


@pytest.mark.parametrize("bad_name", ["../evil.txt", "/etc/passwd", "C:/windows/system.ini", "ok/../../x.txt"])
def test_unsafe_paths_are_rejected(db_session_fixture, user, bad_name):
    with pytest.raises(AppException) as excinfo:
        _import(db_session_fixture, user, {"fine.txt": b"ok", bad_name: b"boom"})
    assert excinfo.value.status_code == 400
    assert _node_count(db_session_fixture, user) == 0


def test_macos_metadata_is_skipped(db_session_fixture, user):
    created = _import(db_session_fixture, user, {"photo.jpg": b"jpg", "__MACOSX/._photo.jpg": b"meta"})
    assert created == 1
    assert fs_node_crud.list_folders(db_session_fixture, user_id=user.id) == []


def test_too_many_entries(db_session_fixture, user, monkeypatch):
    monkeypatch.setattr(get_settings(), "zip_max_entries", 2)
    with pytest.raises(AppException):
        _import(db_session_fixture, user, {"a": b"1", "b": b"2", "c": b"3"})
    assert _node_count(db_session_fixture, user) == 0


def test_rejects_non_zip_input(db_session_fixture, user):
    with pytest.raises(AppException):
        _import(db_session_fixture, user, {"a.txt": b"1"}, filename="bundle.tar")
    with pytest.raises(AppException):
        zip_import_service.import_archive(
            db_session_fixture, user, stream=io.BytesIO(b"not a zip"), filename="broken.zip"
        )


def test_partial_import_keeps_ledger_exact(db_session_fixture, user):
    db = db_session_fixture
    file_service.upload(
        db, user, stream=io.BytesIO(b"ABC"), filename="clash.txt", declared_size=3
    )

    with pytest.raises(NameConflictError):
        _import(db, user, {"first.txt": b"12345", "clash.txt": b"zzzz", "never.txt": b"n"})

    db.refresh(user)
    names = {n.name for n in db.query(FsNode).filter(FsNode.user_id == user.id)}
    assert names == {"clash.txt", "first.txt"}
    assert user.storage_used == 8
    assert user.storage_used == fs_node_crud.sum_file_sizes(db, user_id=user.id)


def _corrupt_entry(archive_bytes: bytes, payload: bytes) -> io.BytesIO:
    data = bytearray(archive_bytes)
    offset = data.index(payload)
    data[offset] ^= 0xFF
    return io.BytesIO(bytes(data))


def test_corrupted_entry_is_rejected_without_partial_blob(db_session_fixture, user, blob_store):
    db = db_session_fixture
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_STORED) as archive:
        archive.writestr("ok.txt", b"fine")
        archive.writestr("bad.txt", b"damaged payload bytes")

    with pytest.raises(AppException) as excinfo:
        zip_import_service.import_archive(
            db, user, stream=_corrupt_entry(buf.getvalue(), b"damaged payload bytes"), filename="bundle.zip"
        )

    assert excinfo.value.status_code == 400
    assert list(blob_store.root.rglob("*.part")) == []
    assert len(list(blob_store.list_keys("users/"))) == 1
    names = {n.name for n in db.query(FsNode).filter(FsNode.user_id == user.id)}
    assert names == {"ok.txt"}
    db.refresh(user)
    assert user.storage_used == 4
