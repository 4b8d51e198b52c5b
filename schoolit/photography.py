"""Trabajos de fotografía: asignación, entrega de resultados y metadatos de Facebook.

La entrega tiene dos resguardos. Un set en proceso rechaza una segunda entrega
del mismo trabajo mientras la primera sigue corriendo, y la escritura final
solo prospera si la fila sigue en ``assigned``. Una entrega repetida completa
el trabajo y lo registra una sola vez.
"""
import threading
from datetime import datetime

from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required
from sqlalchemy import update

from . import db
from .activity import log_activity
from .auth import require_role, require_admin, current_actor
from .errors import ValidationError, NotFound, Forbidden, DuplicateSubmission
from .models import PhotographyJob, User, JOB_STATUSES
from .storage import put_bytes, allowed_image, timestamp_ms
from .time_helpers import parse_datetime

bp = Blueprint("photography", __name__)

_in_flight = set()
_in_flight_lock = threading.Lock()


def _is_admin(user):
    return getattr(user, "role", None) == "admin"


def get_job(job_id, fresh=False):
    job = db.session.get(PhotographyJob, job_id, populate_existing=fresh)
    if job is None:
        raise NotFound("ไม่พบงานถ่ายภาพ")
    return job


def _assignees(ids):
    try:
        ids = [int(i) for i in (ids or [])]
    except (TypeError, ValueError):
        raise ValidationError("ผู้รับผิดชอบไม่ถูกต้อง")
    users = User.query.filter(User.id.in_(ids)).all() if ids else []
    if len(users) != len(set(ids)):
        raise ValidationError("ผู้รับผิดชอบไม่ถูกต้อง")
    by_id = {u.id: u for u in users}
    ids = list(dict.fromkeys(ids))
    return ids, [by_id[i].name for i in ids]


def _times(data):
    start = parse_datetime(data.get("start_time"))
    end = parse_datetime(data.get("end_time"))
    if start is None or end is None:
        raise ValidationError("กรุณาระบุวันเวลาเริ่มและสิ้นสุด")
    if end < start:
        raise ValidationError("เวลาสิ้นสุดต้องไม่ก่อนเวลาเริ่ม")
    return start, end


def create_job(data, user):
    title = (data.get("title") or "").strip()
    location = (data.get("location") or "").strip()
    if not title or not location:
        raise ValidationError("กรุณากรอกข้อมูลให้ครบถ้วน")
    start, end = _times(data)
    if _is_admin(user) and data.get("assignees"):
        ids, names = _assignees(data.get("assignees"))
    else:
        # trabajo creado por el propio fotógrafo
        ids, names = [user.id], [user.name]
    job = PhotographyJob(title=title, description=(data.get("description") or "").strip(),
                         location=location, start_time=start, end_time=end,
                         assignees=ids, assignee_names=names, status="assigned",
                         booking_id=data.get("booking_id") or None)
    db.session.add(job)
    log_activity("create", title, user.name, details=f"มอบหมาย: {', '.join(names)}")
    db.session.commit()
    return job


def update_job(job_id, data, user):
    job = get_job(job_id)
    if job.status != "assigned":
        raise ValidationError("แก้ไขได้เฉพาะงานที่ยังไม่ส่ง")
    for field in ("title", "description", "location"):
        if field in data:
            setattr(job, field, (data.get(field) or "").strip())
    if not job.title:
        raise ValidationError("กรุณาระบุชื่องาน")
    if "start_time" in data or "end_time" in data:
        job.start_time, job.end_time = _times({
            "start_time": data.get("start_time", job.start_time.isoformat()),
            "end_time": data.get("end_time", job.end_time.isoformat()),
        })
    if "assignees" in data:
        job.assignees, job.assignee_names = _assignees(data.get("assignees"))
    log_activity("update", job.title, user.name, details="แก้ไขงานถ่ายภาพ")
    db.session.commit()
    return job


def cancel_job(job_id, user):
    job = get_job(job_id)
    if job.status != "assigned":
        raise ValidationError("ยกเลิกได้เฉพาะงานที่ยังไม่ส่ง")
    job.status = "cancelled"
    log_activity("update", job.title, user.name, details="ยกเลิกงานถ่ายภาพ", status="cancelled")
    db.session.commit()
    return job


def _claim(job_id):
    with _in_flight_lock:
        if job_id in _in_flight:
            raise DuplicateSubmission("งานนี้กำลังถูกส่งอยู่ กรุณารอสักครู่")
        _in_flight.add(job_id)


def _release(job_id):
    with _in_flight_lock:
        _in_flight.discard(job_id)


def submit_job(job_id, user, drive_link=None, cover=None):
    _claim(job_id)
    try:
        job = get_job(job_id, fresh=True)
        if user.id not in (job.assignees or []) and not _is_admin(user):
            raise Forbidden("งานนี้ไม่ได้มอบหมายให้คุณ")
        if job.status == "completed":
            raise DuplicateSubmission("งานนี้ถูกส่งไปแล้ว")
        if job.status != "assigned":
            raise ValidationError("งานนี้ถูกยกเลิกแล้ว")
        drive_link = (drive_link or "").strip() or None
        has_cover = bool(cover and getattr(cover, "filename", ""))
        if not drive_link and not has_cover:
            raise ValidationError("กรุณาอัปโหลดไฟล์ หรือแนบลิงก์ Google Drive")

        cover_url = None
        if has_cover:
            if not allowed_image(cover.filename):
                raise ValidationError(f"ไฟล์ไม่ได้รับอนุญาต: {cover.filename}")
            cover_url = put_bytes(f"covers/{job.id}_{timestamp_ms()}.jpg", cover.read())

        now = datetime.utcnow()
        result = db.session.execute(
            update(PhotographyJob)
            .where(PhotographyJob.id == job.id, PhotographyJob.status == "assigned")
            .values(status="completed", drive_link=drive_link, cover_image=cover_url,
                    completed_by=user.name, completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            raise DuplicateSubmission("งานนี้ถูกส่งไปแล้ว")
        log_activity("update", job.title, user.name, details="ส่งงานถ่ายภาพ",
                     image_url=cover_url, status="completed")
        db.session.commit()
        db.session.refresh(job)
        current_app.logger.info("photography job %s submitted by %s", job.id, user.name)
        return job
    finally:
        _release(job_id)


def record_facebook_post(job_id, data, user):
    job = get_job(job_id)
    if job.status != "completed":
        raise ValidationError("โพสต์ได้เฉพาะงานที่ส่งแล้ว")
    permalink = (data.get("permalink") or "").strip()
    if not permalink:
        raise ValidationError("กรุณาระบุลิงก์โพสต์")
    job.facebook_permalink = permalink
    job.facebook_post_id = (data.get("post_id") or "").strip() or None
    job.facebook_caption = (data.get("caption") or "").strip() or None
    log_activity("update", job.title, user.name, details="โพสต์ลง Facebook")
    db.session.commit()
    return job


# --------- RUTAS ---------
def _payload():
    return request.get_json(silent=True) or request.form


@bp.route("/", strict_slashes=False)
@login_required
def list_jobs():
    require_role("photographer")
    q = PhotographyJob.query
    status = request.args.get("status", "").strip()
    if status in JOB_STATUSES:
        q = q.filter(PhotographyJob.status == status)
    jobs = q.order_by(PhotographyJob.start_time.desc()).all()
    return jsonify([j.to_dict() for j in jobs])


@bp.route("/mine")
@login_required
def my_jobs():
    user = current_actor()
    q = PhotographyJob.query.filter(PhotographyJob.status == "assigned")
    if request.args.get("all") in ("1", "true"):
        q = PhotographyJob.query
    jobs = [j for j in q.order_by(PhotographyJob.start_time.asc()).all()
            if user.id in (j.assignees or [])]
    return jsonify([j.to_dict() for j in jobs])


@bp.route("/new", methods=["POST"])
@login_required
def new_job():
    require_role("photographer")
    data = request.get_json(silent=True) or request.form.to_dict()
    if "assignees" not in data and request.form.getlist("assignees"):
        data["assignees"] = request.form.getlist("assignees")
    return jsonify(create_job(data, current_actor()).to_dict()), 201


@bp.route("/<int:job_id>/edit", methods=["POST"])
@login_required
def edit_job(job_id):
    require_admin()
    return jsonify(update_job(job_id, _payload(), current_actor()).to_dict())


@bp.route("/<int:job_id>/cancel", methods=["POST"])
@login_required
def cancel(job_id):
    require_admin()
    return jsonify(cancel_job(job_id, current_actor()).to_dict())


@bp.route("/<int:job_id>/submit", methods=["POST"])
@login_required
def submit(job_id):
    require_role("photographer")
    job = submit_job(job_id, current_actor(), drive_link=_payload().get("drive_link"),
                     cover=request.files.get("cover"))
    return jsonify(job.to_dict())


@bp.route("/<int:job_id>/facebook", methods=["POST"])
@login_required
def facebook(job_id):
    require_role("photographer")
    return jsonify(record_facebook_post(job_id, _payload(), current_actor()).to_dict())
