from datetime import datetime
from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required
from werkzeug.security import generate_password_hash
from .auth import require_admin, current_actor
from .errors import ValidationError, NotFound
from .models import User, Setting, Notification, USER_ROLES, NOTIFICATION_STATUSES
from . import db

bp = Blueprint("admin", __name__)

RESPONSIBILITIES = ("all", "junior_high", "senior_high")


def _payload():
    return request.get_json(silent=True) or request.form


def _get_user(uid):
    u = db.session.get(User, uid)
    if u is None:
        raise NotFound("ไม่พบผู้ใช้")
    return u


def _apply_profile(u, data):
    for field in ("display_name", "email", "line_user_id"):
        if field in data:
            setattr(u, field, (data.get(field) or "").strip() or None)
    if "role" in data:
        if data["role"] not in USER_ROLES:
            raise ValidationError("บทบาทไม่ถูกต้อง")
        u.role = data["role"]
    if "responsibility" in data:
        if data["responsibility"] not in RESPONSIBILITIES:
            raise ValidationError("ความรับผิดชอบไม่ถูกต้อง")
        u.responsibility = data["responsibility"]


# --------- USUARIOS ---------
@bp.route("/users")
@login_required
def users_list():
    require_admin()
    users = User.query.order_by(User.username.asc()).all()
    return jsonify([u.to_dict() for u in users])


@bp.route("/users/new", methods=["POST"])
@login_required
def users_new():
    require_admin()
    data = _payload()
    username = (data.get("username") or "").strip()
    password = (data.get("password") or "").strip()
    if not username or not password:
        raise ValidationError("กรุณากรอกชื่อผู้ใช้และรหัสผ่าน")
    if User.query.filter_by(username=username).first():
        raise ValidationError("มีชื่อผู้ใช้นี้อยู่แล้ว")
    role = data.get("role") or "user"
    if role not in USER_ROLES:
        raise ValidationError("บทบาทไม่ถูกต้อง")
    u = User(username=username, password_hash=generate_password_hash(password), role=role)
    _apply_profile(u, data)
    db.session.add(u)
    db.session.commit()
    return jsonify(u.to_dict()), 201


@bp.route("/users/<int:uid>/edit", methods=["POST"])
@login_required
def users_edit(uid):
    require_admin()
    u = _get_user(uid)
    data = _payload()
    _apply_profile(u, data)
    newpass = (data.get("password") or "").strip()
    if newpass:
        u.password_hash = generate_password_hash(newpass)
    db.session.commit()
    return jsonify(u.to_dict())


@bp.route("/users/<int:uid>/delete", methods=["POST"])
@login_required
def users_delete(uid):
    require_admin()
    u = _get_user(uid)
    if u.username == "admin":
        raise ValidationError("ไม่สามารถลบผู้ดูแลระบบหลักได้")
    db.session.delete(u)
    db.session.commit()
    return jsonify({"ok": True})


# --------- CONFIGURACIÓN ---------
def _settings_dict(cfg):
    return {
        "notifyRepairCreatedUrl": cfg.notify_repair_created_url,
        "notifyRepairCompletedUrl": cfg.notify_repair_completed_url,
        "notifyRepairReminderUrl": cfg.notify_repair_reminder_url,
        "repairStaleDays": cfg.repair_stale_days or current_app.config["REPAIR_STALE_DAYS"],
        "notificationsEnabled": bool(cfg.notifications_enabled),
    }


@bp.route("/settings", methods=["GET", "POST"])
@login_required
def settings():
    require_admin()
    cfg = db.session.get(Setting, 1)
    if cfg is None:
        cfg = Setting(id=1)
        db.session.add(cfg)
    if request.method == "POST":
        f = _payload()
        for key in ("notify_repair_created_url", "notify_repair_completed_url", "notify_repair_reminder_url"):
            if key in f:
                setattr(cfg, key, (f.get(key) or "").strip() or None)
        if "repair_stale_days" in f:
            try:
                days = int(f.get("repair_stale_days"))
            except (TypeError, ValueError):
                raise ValidationError("จำนวนวันไม่ถูกต้อง")
            if days < 1:
                raise ValidationError("จำนวนวันไม่ถูกต้อง")
            cfg.repair_stale_days = days
        if "notifications_enabled" in f:
            val = f.get("notifications_enabled")
            cfg.notifications_enabled = val if isinstance(val, bool) else str(val).lower() in ("1", "true", "on")
    db.session.commit()
    return jsonify(_settings_dict(cfg))


# --------- OUTBOX ---------
@bp.route("/notifications")
@login_required
def notifications_list():
    require_admin()
    q = Notification.query
    status = request.args.get("status", "").strip()
    if status in NOTIFICATION_STATUSES:
        q = q.filter(Notification.status == status)
    rows = q.order_by(Notification.created_at.desc()).limit(500).all()
    return jsonify([n.to_dict() for n in rows])


@bp.route("/notifications/<int:nid>/retry", methods=["POST"])
@login_required
def notifications_retry(nid):
    require_admin()
    n = db.session.get(Notification, nid)
    if n is None:
        raise NotFound("ไม่พบการแจ้งเตือน")
    n.status = "pending"
    n.attempts = 0
    n.next_attempt_at = datetime.utcnow()
    db.session.commit()
    return jsonify(n.to_dict())


@bp.route("/deliver-now", methods=["POST"])
@login_required
def deliver_now():
    require_admin()
    from .notifications import deliver_pending
    return jsonify(deliver_pending())


@bp.route("/remind-now", methods=["POST"])
@login_required
def remind_now():
    require_admin()
    from .repair_workflow import enqueue_stale_reminders
    return jsonify(enqueue_stale_reminders())


# --------- INTEGRIDAD DE STOCK ---------
@bp.route("/reconcile-inventory", methods=["POST"])
@login_required
def reconcile_inventory():
    require_admin()
    from .ledger import reconcile_borrowed_counts
    from .time_helpers import parse_date
    dry_run = request.args.get("dry_run", "true").lower() not in ("0", "false", "no")
    since = parse_date(request.args.get("since"))
    since = datetime.combine(since, datetime.min.time()) if since else None
    return jsonify(reconcile_borrowed_counts(dry_run=dry_run, since=since, user=current_actor()))
