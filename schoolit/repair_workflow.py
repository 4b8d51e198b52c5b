"""Ciclo de vida de las reparaciones: reporte, avances del técnico y repuestos."""
from datetime import datetime, timedelta

from flask import current_app

from . import db
from .models import RepairTicket, User, REPAIR_STATUSES, REPAIR_ZONES
from .errors import ValidationError, NotFound, InvalidTransition
from .activity import log_activity
from .ledger import get_product, validate_withdraw, withdraw_stock
from .notifications import enqueue, get_settings
from .storage import put_file, put_bytes, decode_signature, timestamp_ms, MAX_REPAIR_IMAGES

TRANSITIONS = {
    "pending": {"pending", "in_progress", "completed", "cancelled"},
    "in_progress": {"in_progress", "waiting_parts", "completed", "cancelled"},
    "waiting_parts": {"waiting_parts", "in_progress", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}
OPEN_STATUSES = ("pending", "in_progress")
REMINDER_LIMIT = 50


def can_transition(current, target):
    return target in TRANSITIONS.get(current, set())


def get_ticket(ticket_id):
    ticket = db.session.get(RepairTicket, ticket_id)
    if ticket is None:
        raise NotFound("ไม่พบรายการแจ้งซ่อม")
    return ticket


def _name(user, default):
    if user is not None and getattr(user, "is_authenticated", False):
        return user.name
    return default


# --------- CREAR ---------
def create_ticket(requester, description, images, zone="junior_high", user=None):
    phone = (requester.get("phone") or "").strip()
    room = (requester.get("room") or "").strip()
    description = (description or "").strip()
    if not phone or not room or not description:
        raise ValidationError("กรุณากรอกข้อมูลที่จำเป็นให้ครบถ้วน")
    images = [f for f in (images or []) if f and getattr(f, "filename", "")]
    if not images:
        raise ValidationError("กรุณาอัปโหลดรูปภาพอย่างน้อย 1 รูป")
    if len(images) > MAX_REPAIR_IMAGES:
        raise ValidationError(f"อัปโหลดภาพได้สูงสุด {MAX_REPAIR_IMAGES} ภาพ")
    zone = zone or "junior_high"
    if zone not in REPAIR_ZONES:
        raise ValidationError("โซนไม่ถูกต้อง")

    urls = [put_file("repair_images", f) for f in images]

    requester_name = _name(user, requester.get("name") or "Unknown")
    authenticated = user is not None and getattr(user, "is_authenticated", False)
    ticket = RepairTicket(
        requester_id=user.id if authenticated else None,
        requester_name=requester_name,
        requester_email=getattr(user, "email", None) or requester.get("email") or None,
        position=(requester.get("position") or "").strip() or None,
        phone=phone, room=room, zone=zone, description=description,
        images=urls, status="pending", parts_used=[],
    )
    db.session.add(ticket)
    db.session.flush()

    enqueue("repair_created", {
        "ticketId": ticket.id, "requesterName": requester_name, "room": room,
        "zone": zone, "description": description, "imageOneUrl": urls[0],
    })
    log_activity("repair", room, requester_name, details=description,
                 image_url=urls[0], zone=zone)
    db.session.commit()
    current_app.logger.info("repair ticket %s created (%s, %s)", ticket.id, room, zone)
    return ticket


# --------- ACTUALIZAR ---------
def update_ticket(ticket_id, status, note, completion_image=None, technician=None):
    ticket = get_ticket(ticket_id)
    if note is None:
        # sin campo en la petición se conserva la nota anterior
        note = ticket.technician_note
    note = str(note or "").strip()
    if status not in REPAIR_STATUSES:
        raise ValidationError("สถานะไม่ถูกต้อง")
    has_new_image = bool(completion_image and getattr(completion_image, "filename", ""))
    if status == "completed" and (not note or not (ticket.completion_image or has_new_image)):
        raise ValidationError("ต้องกรอกหมายเหตุช่างและแนบรูปภาพเพื่อปิดงาน")
    if not can_transition(ticket.status, status):
        raise InvalidTransition(ticket.status, status)

    image_url = ticket.completion_image
    if has_new_image:
        image_url = put_file("repair_completion", completion_image)

    tech_name = _name(technician, "Technician")
    was_completed = ticket.status == "completed"
    ticket.status = status
    ticket.technician_note = note or None
    ticket.technician_id = getattr(technician, "id", None)
    ticket.technician_name = tech_name
    ticket.completion_image = image_url
    ticket.updated_at = datetime.utcnow()

    log_activity("repair_update", ticket.room, tech_name, details=note or None, status=status,
                 image_url=image_url or (ticket.images or [None])[0], zone=ticket.zone)
    if status == "completed" and not was_completed:
        enqueue("repair_completed", {
            "email": ticket.requester_email, "ticketId": ticket.id, "room": ticket.room,
            "problem": ticket.description, "technicianNote": note,
            "completionImage": image_url,
        })
    db.session.commit()
    return ticket


# --------- REPUESTOS ---------
def consume_part(ticket_id, product_id, quantity, signature, technician=None):
    """Retira repuestos del stock para un ticket, con la firma del técnico."""
    ticket = get_ticket(ticket_id)
    part = get_product(product_id)
    quantity = validate_withdraw(part, quantity)
    sig_bytes = decode_signature(signature)

    signature_url = put_bytes(f"repair_signatures/{timestamp_ms()}_sig.png", sig_bytes)
    withdraw_stock(part, quantity)

    # la columna JSON se reasigna para que SQLAlchemy detecte el cambio
    ticket.parts_used = list(ticket.parts_used or []) + [{
        "name": part.name,
        "quantity": quantity,
        "date": datetime.utcnow().isoformat(),
        "signatureUrl": signature_url,
    }]
    ticket.updated_at = datetime.utcnow()

    tech_name = _name(technician, "Technician")
    log_activity("requisition", part.name, tech_name,
                 details=f"เบิกจากงานซ่อมห้อง {ticket.room} จำนวน {quantity} ชิ้น",
                 zone=ticket.zone or "unknown", status="completed", signature_url=signature_url)
    db.session.commit()
    return ticket


# --------- ESTADÍSTICAS ---------
def repair_stats():
    q = RepairTicket.query
    return {
        "total": q.count(),
        "pending": q.filter(RepairTicket.status == "pending").count(),
        "inProgress": q.filter(RepairTicket.status.in_(("in_progress", "waiting_parts"))).count(),
        "completed": q.filter(RepairTicket.status == "completed").count(),
    }


# --------- RECORDATORIO ---------
def stale_days():
    s = get_settings()
    if s is not None and s.repair_stale_days:
        return s.repair_stale_days
    return current_app.config.get("REPAIR_STALE_DAYS", 2)


def _zone_recipients(zone):
    techs = User.query.filter(User.role == "technician", User.line_user_id.isnot(None)).all()
    ids = [t.line_user_id for t in techs if (t.responsibility or "all") in ("all", zone)]
    return list(dict.fromkeys(ids))


def enqueue_stale_reminders(now=None):
    """Un ``repair_reminder`` por zona para tickets abiertos sin movimiento más allá del plazo."""
    now = now or datetime.utcnow()
    days = stale_days()
    cutoff = now - timedelta(days=days)
    tickets = (RepairTicket.query
               .filter(RepairTicket.status.in_(OPEN_STATUSES), RepairTicket.updated_at < cutoff)
               .order_by(RepairTicket.updated_at.asc())
               .limit(REMINDER_LIMIT).all())
    if not tickets:
        current_app.logger.info("[scheduler] no stale repairs (>%s days)", days)
        return {}

    by_zone = {}
    for t in tickets:
        by_zone.setdefault(t.zone or "junior_high", []).append({
            "id": t.id, "room": t.room, "description": t.description, "status": t.status,
            "daysStale": (now - t.updated_at).days,
        })
    for zone, items in by_zone.items():
        enqueue("repair_reminder", {"zone": zone, "count": len(items), "tickets": items,
                                    "recipients": _zone_recipients(zone)})
    db.session.commit()
    counts = {zone: len(items) for zone, items in by_zone.items()}
    current_app.logger.info("[scheduler] stale repair reminders queued: %s", counts)
    return counts
