from datetime import datetime, timedelta

import pytest

from schoolit import db
from schoolit.activity import log_activity, migrate_legacy_statuses, split_legacy_details
from schoolit.models import ActivityLog

from conftest import login


def _entry(action, details=None, status=None, **kw):
    e = ActivityLog(action=action, product_name=kw.pop("product_name", "ห้อง 301"),
                    user_name=kw.pop("user_name", "Tech"), details=details, status=status,
                    timestamp=kw.pop("timestamp", datetime.utcnow()), **kw)
    db.session.add(e)
    db.session.commit()
    return e


def test_unknown_action_is_rejected(app):
    with pytest.raises(ValueError):
        log_activity("explode", "x", "someone")


def test_log_activity_is_committed_by_caller(app):
    log_activity("add", "Router", "Admin")
    db.session.rollback()
    assert ActivityLog.query.count() == 0


def test_split_legacy_details():
    assert split_legacy_details("สถานะ: in_progress - รออะไหล่จากร้าน") == ("in_progress", "รออะไหล่จากร้าน")
    assert split_legacy_details("สถานะ: completed") == ("completed", "")
    assert split_legacy_details("สถานะ: broken - x") is None
    assert split_legacy_details("ซ่อมเสร็จแล้ว") is None


def test_migrate_legacy_statuses(app):
    legacy = _entry("repair_update", "สถานะ: waiting_parts - รอสายไฟ")
    done = _entry("repair_update", "สถานะ: completed")
    modern = _entry("repair_update", "เปลี่ยนหลอด", status="completed")
    other = _entry("borrow", "สถานะ: completed")

    assert migrate_legacy_statuses() == 2

    assert (legacy.status, legacy.details) == ("waiting_parts", "รอสายไฟ")
    assert (done.status, done.details) == ("completed", None)
    assert modern.details == "เปลี่ยนหลอด"
    assert other.status is None
    # idempotente
    assert migrate_legacy_statuses() == 0


def test_migrate_legacy_cli(app):
    _entry("repair_update", "สถานะ: in_progress - กำลังตรวจ")
    result = app.test_cli_runner().invoke(args=["activities", "migrate-legacy"])
    assert result.exit_code == 0
    assert "1 entries migrated" in result.output
    db.session.expire_all()
    assert ActivityLog.query.one().status == "in_progress"


def test_list_filters(app, client, users):
    now = datetime.utcnow()
    _entry("repair", zone="junior_high", timestamp=now - timedelta(days=2))
    _entry("repair_update", zone="senior_high", status="in_progress", timestamp=now - timedelta(days=1))
    _entry("borrow", product_name="Camera", user_name="Teacher", timestamp=now)
    login(client, "admin", "admin")

    rows = client.get("/activities/").get_json()
    assert [r["action"] for r in rows] == ["borrow", "repair_update", "repair"]

    rows = client.get("/activities/?repair_only=1").get_json()
    assert {r["action"] for r in rows} == {"repair", "repair_update"}
    rows = client.get("/activities/?zone=senior_high").get_json()
    assert [r["status"] for r in rows] == ["in_progress"]
    rows = client.get("/activities/?user=Teacher&action=borrow").get_json()
    assert [r["productName"] for r in rows] == ["Camera"]
    assert len(client.get("/activities/?limit=1").get_json()) == 1


def test_list_requires_login(app, client):
    assert client.get("/activities/").status_code == 401


@pytest.mark.parametrize("ext, mimetype", [
    ("csv", "text/csv"),
    ("xlsx", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"),
    ("pdf", "application/pdf"),
])
def test_exports(app, client, users, ext, mimetype):
    _entry("repair", "โปรเจคเตอร์เสีย", zone="junior_high")
    login(client, "admin", "admin")
    resp = client.get(f"/activities/export.{ext}")
    assert resp.status_code == 200
    assert resp.mimetype == mimetype
    assert f".{ext}" in resp.headers["Content-Disposition"]
    if ext == "csv":
        assert "โปรเจคเตอร์เสีย" in resp.data.decode("utf-8-sig")
