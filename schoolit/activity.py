import re
from datetime import datetime, time

import click
from flask import Blueprint, request, jsonify, current_app
from flask.cli import AppGroup
from flask_login import login_required, current_user

from . import db
from .models import ActivityLog, ACTIVITY_ACTIONS, REPAIR_STATUSES
from .time_helpers import parse_date, fmt_local
from .utils_export import stream_csv, stream_xlsx, stream_pdf

bp = Blueprint("activities", __name__)
activities_cli = AppGroup("activities", help="Activity log maintenance.")

REPAIR_ACTIONS = ("repair", "repair_update")
# "สถานะ: in_progress - รออะไหล่จากร้าน"
LEGACY_STATUS_RE = re.compile(r"สถานะ:\s*([a-zA-Z_]+)(?:\s*-\s*(.*))?", re.DOTALL)


def actor_name(default="system"):
    if getattr(current_user, "is_authenticated", False):
        return current_user.name
    return default


def log_activity(action, product_name, user_name=None, details=None, image_url=None,
                 signature_url=None, zone=None, status=None):
    """Agrega un registro de auditoría a la sesión actual.

    Quien llama lo commitea junto con el cambio que describe, así una
    operación fallida no deja entrada.
    """
    if action not in ACTIVITY_ACTIONS:
        raise ValueError(f"unknown activity action: {action!r}")
    entry = ActivityLog(
        action=action,
        product_name=product_name,
        user_name=user_name or actor_name(),
        details=details or None,
        image_url=image_url or None,
        signature_url=signature_url or None,
        zone=zone or None,
        status=status or None,
        timestamp=datetime.utcnow(),
    )
    db.session.add(entry)
    return entry


def split_legacy_details(details):
    """Devuelve ``(status, resto_de_details)`` de una entrada legacy en texto libre, o None."""
    if not details:
        return None
    m = LEGACY_STATUS_RE.search(details)
    if not m or m.group(1) not in REPAIR_STATUSES:
        return None
    return m.group(1), (m.group(2) or "").strip()


def migrate_legacy_statuses():
    """Conversión única de las entradas repair_update que traen el estado en ``details``."""
    migrated = 0
    rows = ActivityLog.query.filter(ActivityLog.action == "repair_update",
                                    ActivityLog.status.is_(None)).all()
    for row in rows:
        parsed = split_legacy_details(row.details)
        if parsed is None:
            continue
        row.status, rest = parsed
        row.details = rest or None
        migrated += 1
    db.session.commit()
    return migrated


@activities_cli.command("migrate-legacy")
def migrate_legacy_command():
    """Mueve los estados legacy de details a la columna status."""
    n = migrate_legacy_statuses()
    current_app.logger.info("legacy activity migration: %d entries updated", n)
    click.echo(f"{n} entries migrated")


def filtered_query(args):
    q = ActivityLog.query
    action = (args.get("action") or "").strip()
    if action in ACTIVITY_ACTIONS:
        q = q.filter(ActivityLog.action == action)
    if args.get("repair_only") in ("1", "true"):
        q = q.filter(ActivityLog.action.in_(REPAIR_ACTIONS))
    zone = (args.get("zone") or "").strip()
    if zone:
        q = q.filter(ActivityLog.zone == zone)
    user = (args.get("user") or "").strip()
    if user:
        q = q.filter(ActivityLog.user_name == user)
    start = parse_date(args.get("start"))
    end = parse_date(args.get("end"))
    if start: q = q.filter(ActivityLog.timestamp >= datetime.combine(start, time.min))
    if end: q = q.filter(ActivityLog.timestamp <= datetime.combine(end, time.max))
    return q.order_by(ActivityLog.timestamp.desc(), ActivityLog.id.desc())


def recent_activities(limit=10, repair_only=False):
    q = ActivityLog.query
    if repair_only:
        q = q.filter(ActivityLog.action.in_(REPAIR_ACTIONS))
    return q.order_by(ActivityLog.timestamp.desc(), ActivityLog.id.desc()).limit(limit).all()


# --------- LISTADO ---------
@bp.route("/", strict_slashes=False)
@login_required
def list_activities():
    try:
        limit = max(1, min(int(request.args.get("limit", 50)), 500))
    except ValueError:
        limit = 50
    rows = filtered_query(request.args).limit(limit).all()
    return jsonify([a.to_dict() for a in rows])


def _export_rows():
    rows = filtered_query(request.args).all()
    return [[fmt_local(a.timestamp), a.action, a.product_name or "", a.user_name or "",
             a.status or "", a.zone or "", a.details or ""] for a in rows]


HEADERS = ["timestamp", "action", "item", "user", "status", "zone", "details"]


@bp.route("/export.csv")
@login_required
def export_csv():
    return stream_csv("activities.csv", HEADERS, _export_rows())


@bp.route("/export.xlsx")
@login_required
def export_xlsx():
    return stream_xlsx("activities.xlsx", HEADERS, _export_rows())


@bp.route("/export.pdf")
@login_required
def export_pdf():
    return stream_pdf("activities.pdf", "Activity log", HEADERS, _export_rows())
