from datetime import datetime, timedelta

import pytest

from schoolit import db
from schoolit.errors import ValidationError, InvalidTransition, ConflictError
from schoolit.models import ActivityLog, Notification, RepairTicket
from schoolit.repair_workflow import (
    create_ticket, update_ticket, consume_part, repair_stats, enqueue_stale_reminders, can_transition,
)

from conftest import SIGNATURE, make_product, make_user, image, login

REQUESTER = {"phone": "0899999999", "room": "ห้อง 301", "position": "ครู"}


def _ticket(users, **kw):
    return create_ticket(REQUESTER, kw.pop("description", "โปรเจคเตอร์เปิดไม่ติด"),
                         kw.pop("images", [image()]), zone=kw.pop("zone", "junior_high"),
                         user=users["teacher"])


def test_create_ticket_persists_and_enqueues(app, users):
    t = _ticket(users)

    assert t.status == "pending"
    assert t.requester_name == "Teacher"
    assert t.requester_email == "teacher@school.test"
    assert len(t.images) == 1 and t.images[0].startswith("/files/repair_images/")
    [n] = Notification.query.all()
    assert n.kind == "repair_created" and n.status == "pending"
    assert n.payload == {"ticketId": t.id, "requesterName": "Teacher", "room": "ห้อง 301",
                         "zone": "junior_high", "description": "โปรเจคเตอร์เปิดไม่ติด",
                         "imageOneUrl": t.images[0]}
    [entry] = ActivityLog.query.all()
    assert entry.action == "repair" and entry.zone == "junior_high"


def test_create_ticket_requires_images(app, users):
    with pytest.raises(ValidationError):
        _ticket(users, images=[])
    with pytest.raises(ValidationError):
        _ticket(users, images=[image(f"p{i}.jpg") for i in range(6)])
    assert RepairTicket.query.count() == 0
    assert Notification.query.count() == 0


def test_create_ticket_requires_fields(app, users):
    with pytest.raises(ValidationError):
        create_ticket({"room": "A"}, "broken", [image()], user=users["teacher"])


def test_completion_requires_note_and_image(app, users):
    t = _ticket(users)
    with pytest.raises(ValidationError):
        update_ticket(t.id, "completed", "", completion_image=image("done.jpg"), technician=users["tech"])
    with pytest.raises(ValidationError):
        update_ticket(t.id, "completed", "เปลี่ยนหลอดแล้ว", technician=users["tech"])

    done = update_ticket(t.id, "completed", "เปลี่ยนหลอดแล้ว", completion_image=image("done.jpg"),
                         technician=users["tech"])
    assert done.status == "completed"
    assert done.completion_image.startswith("/files/repair_completion/")
    assert done.technician_name == "Tech"


def test_completion_accepts_existing_image(app, users):
    t = _ticket(users)
    update_ticket(t.id, "in_progress", "กำลังตรวจสอบ", completion_image=image("before.jpg"),
                  technician=users["tech"])
    done = update_ticket(t.id, "completed", "ซ่อมเสร็จ", technician=users["tech"])
    assert done.status == "completed"


def test_completion_enqueues_requester_notification(app, users):
    t = _ticket(users)
    update_ticket(t.id, "completed", "ซ่อมเสร็จ", completion_image=image("done.jpg"), technician=users["tech"])
    n = Notification.query.filter_by(kind="repair_completed").one()
    assert n.payload["email"] == "teacher@school.test"
    assert n.payload["ticketId"] == t.id
    assert n.payload["technicianNote"] == "ซ่อมเสร็จ"
    assert n.payload["completionImage"] == t.completion_image
    entry = ActivityLog.query.filter_by(action="repair_update").one()
    assert entry.status == "completed"
    assert entry.details == "ซ่อมเสร็จ"


def test_update_without_note_keeps_previous_note(app, users):
    t = _ticket(users)
    update_ticket(t.id, "in_progress", "กำลังตรวจ", technician=users["tech"])

    kept = update_ticket(t.id, "waiting_parts", None, technician=users["tech"])
    assert kept.technician_note == "กำลังตรวจ"

    cleared = update_ticket(t.id, "in_progress", "", technician=users["tech"])
    assert cleared.technician_note is None


def test_transition_table():
    assert can_transition("pending", "in_progress")
    assert can_transition("in_progress", "waiting_parts")
    assert can_transition("waiting_parts", "in_progress")
    assert can_transition("in_progress", "in_progress")
    assert not can_transition("waiting_parts", "completed")
    assert not can_transition("completed", "in_progress")
    assert not can_transition("cancelled", "pending")


def test_terminal_ticket_rejects_changes(app, users):
    t = _ticket(users)
    update_ticket(t.id, "cancelled", "ซ้ำกับงานอื่น", technician=users["tech"])
    with pytest.raises(InvalidTransition) as exc:
        update_ticket(t.id, "in_progress", "เปิดใหม่", technician=users["tech"])
    assert exc.value.current == "cancelled"
    assert ActivityLog.query.filter_by(action="repair_update").count() == 1


def test_consume_part_scenario(app, users):
    t = _ticket(users)
    part = make_product(name="Lamp", type="bulk", quantity=2)

    consume_part(t.id, part.id, 1, SIGNATURE, technician=users["tech"])
    consume_part(t.id, part.id, 1, SIGNATURE, technician=users["tech"])

    db.session.refresh(part)
    assert part.quantity == 0
    assert part.status == "requisitioned"
    db.session.refresh(t)
    assert [p["name"] for p in t.parts_used] == ["Lamp", "Lamp"]
    assert all(p["signatureUrl"].startswith("/files/repair_signatures/") for p in t.parts_used)
    entries = ActivityLog.query.filter_by(action="requisition").all()
    assert len(entries) == 2
    assert entries[0].zone == "junior_high"
    assert entries[0].status == "completed"
    assert entries[0].details == "เบิกจากงานซ่อมห้อง ห้อง 301 จำนวน 1 ชิ้น"

    with pytest.raises(ValidationError):
        consume_part(t.id, part.id, 1, SIGNATURE, technician=users["tech"])


def test_consume_part_respects_borrowed_units(app, users):
    t = _ticket(users)
    part = make_product(name="Fuse", type="bulk", quantity=3, borrowed_count=2)
    with pytest.raises(ValidationError):
        consume_part(t.id, part.id, 2, SIGNATURE, technician=users["tech"])
    consume_part(t.id, part.id, 1, SIGNATURE, technician=users["tech"])
    db.session.refresh(part)
    assert part.quantity == 2 and part.borrowed_count == 2


def test_consume_part_requires_signature(app, users):
    t = _ticket(users)
    part = make_product(name="Screw", type="bulk", quantity=10)
    with pytest.raises(ValidationError):
        consume_part(t.id, part.id, 1, "", technician=users["tech"])
    db.session.refresh(t)
    assert t.parts_used == []


def test_consume_part_conflict_leaves_ticket_untouched(app, users):
    from sqlalchemy import update
    from schoolit.models import Product
    t = _ticket(users)
    part = make_product(name="RAM", type="bulk", quantity=1)
    assert part.available_stock == 1
    db.session.execute(update(Product).where(Product.id == part.id).values(quantity=0)
                       .execution_options(synchronize_session=False))
    with pytest.raises(ConflictError):
        consume_part(t.id, part.id, 1, SIGNATURE, technician=users["tech"])
    db.session.refresh(t)
    assert t.parts_used == []


def test_repair_stats(app, users):
    a = _ticket(users)
    b = _ticket(users)
    _ticket(users)
    update_ticket(a.id, "in_progress", "", technician=users["tech"])
    update_ticket(a.id, "waiting_parts", "รออะไหล่", technician=users["tech"])
    update_ticket(b.id, "completed", "ok", completion_image=image(), technician=users["tech"])
    assert repair_stats() == {"total": 3, "pending": 1, "inProgress": 1, "completed": 1}


def test_stale_reminders_grouped_by_zone(app, users):
    old = datetime.utcnow() - timedelta(days=3)
    a = _ticket(users, zone="junior_high")
    b = _ticket(users, zone="senior_high")
    c = _ticket(users, zone="junior_high")
    fresh = _ticket(users, zone="junior_high")
    for t in (a, b, c):
        t.updated_at = old
    db.session.commit()
    make_user("tech2", "technician", responsibility="senior_high", line_user_id="U-tech2")
    Notification.query.delete()
    db.session.commit()

    counts = enqueue_stale_reminders()

    assert counts == {"junior_high": 2, "senior_high": 1}
    reminders = {n.payload["zone"]: n.payload for n in Notification.query.filter_by(kind="repair_reminder")}
    assert reminders["junior_high"]["count"] == 2
    assert {i["id"] for i in reminders["junior_high"]["tickets"]} == {a.id, c.id}
    assert fresh.id not in {i["id"] for i in reminders["junior_high"]["tickets"]}
    assert reminders["junior_high"]["tickets"][0]["daysStale"] == 3
    assert reminders["junior_high"]["recipients"] == ["U-tech"]
    assert reminders["senior_high"]["recipients"] == ["U-tech2"]


def test_no_stale_tickets_enqueues_nothing(app, users):
    _ticket(users)
    assert enqueue_stale_reminders() == {}
    assert Notification.query.filter_by(kind="repair_reminder").count() == 0


# --------- HTTP ---------
def test_http_create_and_update_ticket(app, client, users):
    login(client, "teacher")
    resp = client.post("/repairs/new", data={
        "phone": "0811111111", "room": "Lab 2", "description": "คอมพิวเตอร์ค้าง", "zone": "senior_high",
        "images": [image("a.jpg"), image("b.png")],
    }, content_type="multipart/form-data")
    assert resp.status_code == 201
    ticket_id = resp.get_json()["id"]
    assert len(resp.get_json()["images"]) == 2

    assert client.post(f"/repairs/{ticket_id}/update", json={"status": "in_progress"}).status_code == 403

    client.post("/auth/logout")
    login(client, "tech")
    resp = client.post(f"/repairs/{ticket_id}/update", json={"status": "completed", "technician_note": "x"})
    assert resp.status_code == 400
    resp = client.post(f"/repairs/{ticket_id}/update", json={"status": "in_progress", "technician_note": ""})
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "in_progress"


def test_http_invalid_transition_is_409(app, client, users):
    t = _ticket(users)
    update_ticket(t.id, "cancelled", "", technician=users["tech"])
    login(client, "tech")
    resp = client.post(f"/repairs/{t.id}/update", json={"status": "pending"})
    assert resp.status_code == 409
    assert resp.get_json()["current"] == "cancelled"


def test_http_update_without_note_field_keeps_note(app, client, users):
    t = _ticket(users)
    update_ticket(t.id, "in_progress", "รออะไหล่จากร้าน", technician=users["tech"])
    login(client, "tech")

    resp = client.post(f"/repairs/{t.id}/update", json={"status": "waiting_parts"})
    assert resp.status_code == 200
    assert resp.get_json()["technicianNote"] == "รออะไหล่จากร้าน"
    assert resp.get_json()["requesterId"] == users["teacher"].id
