"""维护任务测试：孤儿对象清理与配额重算。"""

from __future__ import annotations

import io
from datetime import timedelta

from app.packages.drive.core.timezone import utcnow
from app.packages.drive.services.file_service import file_service
from app.packages.drive.services.maintenance_service import maintenance_service
from app.packages.drive.services.quota_ledger import quota_ledger


def test_orphan_sweep_respects_references_and_grace(db_session_fixture, user, blob_store):
    db = db_session_fixture
    node = file_service.upload(db, user, stream=io.BytesIO(b"kept"), filename="kept.txt", declared_size=4)
    blob_store.put(f"users/{user.id}/orphan", io.BytesIO(b"lost"))

    # 默认宽限期内不删除
    assert maintenance_service.sweep_orphan_blobs(db) == 0
    assert blob_store.exists(f"users/{user.id}/orphan")

    removed = maintenance_service.sweep_orphan_blobs(db, older_than=utcnow() + timedelta(minutes=1))
    assert removed == 1
    assert not blob_store.exists(f"users/{user.id}/orphan")
    assert blob_store.exists(node.storage_key)


def test_recalculate_quota_fixes_drift(db_session_fixture, user):
    db = db_session_fixture
    file_service.upload(db, user, stream=io.BytesIO(b"x" * 12), filename="a.bin", declared_size=12)
    quota_ledger.set_used(db, user_id=user.id, nbytes=999)

    assert maintenance_service.recalculate_quota(db, user.id) == 12
    db.refresh(user)
    assert user.storage_used == 12
    assert maintenance_service.recalculate_quota(db, 987654) == 0


def test_run_reports_corrections(db_session_fixture, make_user):
    db = db_session_fixture
    drifted = make_user()
    make_user()
    quota_ledger.set_used(db, user_id=drifted.id, nbytes=50)

    assert maintenance_service.run(db) == {"orphans": 0, "quota_corrected": 1}
