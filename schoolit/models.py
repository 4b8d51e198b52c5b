from datetime import datetime
from werkzeug.security import generate_password_hash, check_password_hash
from flask_login import UserMixin
from . import db, login_manager


def utcnow():
    return datetime.utcnow()


# ====================== Inventario ======================
PRODUCT_STATUSES = ("available", "borrowed", "requisitioned", "unavailable", "maintenance", "ไม่ว่าง")
PRODUCT_TYPES = ("unique", "bulk")
BORROWED_STATUSES = ("borrowed", "ไม่ว่าง")


class Product(db.Model):
    __tablename__ = "products"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    brand = db.Column(db.String(120), default="")
    model = db.Column(db.String(120))
    location = db.Column(db.String(120), default="")
    image_url = db.Column(db.String(500), default="")
    stock_id = db.Column(db.String(120), unique=True, index=True)  # código QR
    status = db.Column(db.String(32), default="available", nullable=False, index=True)
    type = db.Column(db.String(16), default="unique", nullable=False)
    quantity = db.Column(db.Integer)
    borrowed_count = db.Column(db.Integer, default=0)
    category = db.Column(db.String(120))
    serial_number = db.Column(db.String(120), index=True)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def is_bulk(self):
        return self.type == "bulk"

    @property
    def available_stock(self):
        if self.is_bulk:
            return (self.quantity or 0) - (self.borrowed_count or 0)
        return 1 if self.status == "available" else 0

    def to_dict(self):
        return {
            "id": self.id, "name": self.name, "brand": self.brand, "model": self.model,
            "location": self.location, "imageUrl": self.image_url, "stockId": self.stock_id,
            "status": self.status, "type": self.type, "quantity": self.quantity,
            "borrowedCount": self.borrowed_count or 0, "availableStock": self.available_stock,
            "category": self.category, "serialNumber": self.serial_number,
            "description": self.description,
            "createdAt": _iso(self.created_at), "updatedAt": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Product {self.id} {self.name!r} {self.status}>"


TRANSACTION_TYPES = ("borrow", "requisition", "return")


class Transaction(db.Model):
    __tablename__ = "transactions"
    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(16), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), index=True)
    product_name = db.Column(db.String(200))
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), index=True)
    user_name = db.Column(db.String(120))
    user_email = db.Column(db.String(200))
    room = db.Column(db.String(120))
    phone = db.Column(db.String(40))
    position = db.Column(db.String(120))
    reason = db.Column(db.Text)
    quantity = db.Column(db.Integer, default=1, nullable=False)
    signature_url = db.Column(db.String(500))
    status = db.Column(db.String(16), default="active", nullable=False, index=True)
    timestamp = db.Column(db.DateTime, default=utcnow, nullable=False)
    return_date = db.Column(db.Date)  # devolución prevista (solo préstamo)
    returned_at = db.Column(db.DateTime)
    returner_name = db.Column(db.String(120))
    return_notes = db.Column(db.Text)
    return_signature_url = db.Column(db.String(500))

    product = db.relationship("Product", backref=db.backref("transactions", lazy="dynamic"))

    def to_dict(self):
        return {
            "id": self.id, "type": self.type, "productId": self.product_id,
            "productName": self.product_name, "userId": self.user_id, "userName": self.user_name,
            "userEmail": self.user_email, "room": self.room, "phone": self.phone,
            "position": self.position, "reason": self.reason, "quantity": self.quantity,
            "signatureUrl": self.signature_url, "status": self.status,
            "timestamp": _iso(self.timestamp),
            "returnDate": self.return_date.isoformat() if self.return_date else None,
            "returnedAt": _iso(self.returned_at), "returnerName": self.returner_name,
            "returnNotes": self.return_notes,
        }


# ====================== Reparaciones ======================
REPAIR_STATUSES = ("pending", "in_progress", "waiting_parts", "completed", "cancelled")
REPAIR_ZONES = ("junior_high", "senior_high", "common")


class RepairTicket(db.Model):
    __tablename__ = "repair_tickets"
    id = db.Column(db.Integer, primary_key=True)
    requester_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), index=True)
    requester_name = db.Column(db.String(120), nullable=False)
    requester_email = db.Column(db.String(200))
    position = db.Column(db.String(120))
    phone = db.Column(db.String(40), nullable=False)
    room = db.Column(db.String(120), nullable=False)
    zone = db.Column(db.String(20), default="junior_high", index=True)
    description = db.Column(db.Text, nullable=False)
    ai_diagnosis = db.Column(db.Text)
    images = db.Column(db.JSON, default=list, nullable=False)
    status = db.Column(db.String(20), default="pending", nullable=False, index=True)
    technician_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    technician_name = db.Column(db.String(120))
    technician_note = db.Column(db.Text)
    completion_image = db.Column(db.String(500))
    parts_used = db.Column(db.JSON, default=list, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    def to_dict(self):
        return {
            "id": self.id, "requesterId": self.requester_id, "requesterName": self.requester_name,
            "requesterEmail": self.requester_email, "position": self.position,
            "phone": self.phone, "room": self.room, "zone": self.zone,
            "description": self.description, "aiDiagnosis": self.ai_diagnosis,
            "images": list(self.images or []), "status": self.status,
            "technicianId": self.technician_id, "technicianName": self.technician_name,
            "technicianNote": self.technician_note, "completionImage": self.completion_image,
            "partsUsed": list(self.parts_used or []),
            "createdAt": _iso(self.created_at), "updatedAt": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<RepairTicket {self.id} {self.room!r} {self.status}>"


# ====================== Bitácora ======================
ACTIVITY_ACTIONS = ("borrow", "return", "requisition", "add", "update", "repair", "repair_update", "create", "delete")


class ActivityLog(db.Model):
    __tablename__ = "activities"
    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(20), nullable=False, index=True)
    product_name = db.Column(db.String(200))
    user_name = db.Column(db.String(120))
    details = db.Column(db.Text)
    image_url = db.Column(db.String(500))
    signature_url = db.Column(db.String(500))
    zone = db.Column(db.String(20))
    status = db.Column(db.String(20))
    timestamp = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    def to_dict(self):
        return {
            "id": self.id, "action": self.action, "productName": self.product_name,
            "userName": self.user_name, "details": self.details, "imageUrl": self.image_url,
            "signatureUrl": self.signature_url, "zone": self.zone, "status": self.status,
            "timestamp": _iso(self.timestamp),
        }


# ====================== Fotografía / videos ======================
JOB_STATUSES = ("assigned", "completed", "cancelled")


class PhotographyJob(db.Model):
    __tablename__ = "photography_jobs"
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    location = db.Column(db.String(200), default="")
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False, index=True)
    assignees = db.Column(db.JSON, default=list, nullable=False)
    assignee_names = db.Column(db.JSON, default=list, nullable=False)
    status = db.Column(db.String(16), default="assigned", nullable=False, index=True)
    booking_id = db.Column(db.String(64))
    drive_link = db.Column(db.String(500))
    cover_image = db.Column(db.String(500))
    facebook_post_id = db.Column(db.String(120))
    facebook_permalink = db.Column(db.String(500))
    facebook_caption = db.Column(db.Text)
    completed_by = db.Column(db.String(120))
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id, "title": self.title, "description": self.description,
            "location": self.location, "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time), "assignees": list(self.assignees or []),
            "assigneeNames": list(self.assignee_names or []), "status": self.status,
            "bookingId": self.booking_id, "driveLink": self.drive_link,
            "coverImage": self.cover_image, "facebookPostId": self.facebook_post_id,
            "facebookPermalink": self.facebook_permalink, "facebookCaption": self.facebook_caption,
            "completedBy": self.completed_by, "completedAt": _iso(self.completed_at),
        }


class VideoItem(db.Model):
    __tablename__ = "video_gallery"
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    video_url = db.Column(db.String(500), nullable=False)
    platform = db.Column(db.String(32), default="youtube")
    video_links = db.Column(db.JSON, default=list, nullable=False)
    thumbnail_url = db.Column(db.String(500), default="")
    category = db.Column(db.String(120), nullable=False, index=True)
    is_published = db.Column(db.Boolean, default=True, index=True)
    event_date = db.Column(db.Date)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    created_by_name = db.Column(db.String(120))
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    def to_dict(self):
        return {
            "id": self.id, "title": self.title, "description": self.description,
            "videoUrl": self.video_url, "platform": self.platform,
            "videoLinks": list(self.video_links or []), "thumbnailUrl": self.thumbnail_url,
            "category": self.category, "isPublished": bool(self.is_published),
            "eventDate": self.event_date.isoformat() if self.event_date else None,
            "createdByName": self.created_by_name, "createdAt": _iso(self.created_at),
        }


# ====================== Usuarios / config ======================
USER_ROLES = ("admin", "technician", "photographer", "user")


class User(UserMixin, db.Model):
    __tablename__ = "users"
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    display_name = db.Column(db.String(120))
    email = db.Column(db.String(200), index=True)
    role = db.Column(db.String(20), default="user")
    responsibility = db.Column(db.String(20), default="all")  # all | junior_high | senior_high
    line_user_id = db.Column(db.String(64))

    @classmethod
    def create_user(cls, username, password, role="user", **extra):
        u = cls(username=username, password_hash=generate_password_hash(password), role=role, **extra)
        db.session.add(u); db.session.commit(); return u

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    @property
    def name(self):
        return self.display_name or self.email or self.username

    def to_dict(self):
        return {"id": self.id, "username": self.username, "displayName": self.display_name,
                "email": self.email, "role": self.role, "responsibility": self.responsibility}


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


class Setting(db.Model):
    __tablename__ = "settings"
    id = db.Column(db.Integer, primary_key=True)
    notify_repair_created_url = db.Column(db.String(500))
    notify_repair_completed_url = db.Column(db.String(500))
    notify_repair_reminder_url = db.Column(db.String(500))
    repair_stale_days = db.Column(db.Integer)
    notifications_enabled = db.Column(db.Boolean, default=True)


NOTIFICATION_STATUSES = ("pending", "sent", "failed", "skipped")


class Notification(db.Model):
    __tablename__ = "notifications"
    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(40), nullable=False, index=True)
    payload = db.Column(db.JSON, nullable=False)
    status = db.Column(db.String(16), default="pending", nullable=False, index=True)
    attempts = db.Column(db.Integer, default=0, nullable=False)
    next_attempt_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    last_error = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    sent_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            "id": self.id, "kind": self.kind, "payload": self.payload, "status": self.status,
            "attempts": self.attempts, "nextAttemptAt": _iso(self.next_attempt_at),
            "lastError": self.last_error, "createdAt": _iso(self.created_at),
            "sentAt": _iso(self.sent_at),
        }


def _iso(dt):
    return dt.isoformat() if dt else None
