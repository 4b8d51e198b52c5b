from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user

from . import db
from .auth import require_role, current_actor
from .models import RepairTicket, REPAIR_STATUSES, REPAIR_ZONES
from .repair_workflow import create_ticket, update_ticket, consume_part, repair_stats, get_ticket
from .time_helpers import fmt_local
from .utils_export import stream_csv, stream_xlsx

bp = Blueprint("repairs", __name__)


def _payload():
    return request.get_json(silent=True) or request.form


# --------- LISTADO / FILTRO ---------
def _filtered():
    q = RepairTicket.query.order_by(RepairTicket.created_at.desc())
    status = request.args.get("status", "").strip()
    zone = request.args.get("zone", "").strip()
    text = request.args.get("q", "").strip()
    if status in REPAIR_STATUSES:
        q = q.filter(RepairTicket.status == status)
    if zone in REPAIR_ZONES:
        q = q.filter(RepairTicket.zone == zone)
    if text:
        like = f"%{text}%"
        q = q.filter(db.or_(RepairTicket.room.ilike(like), RepairTicket.description.ilike(like),
                            RepairTicket.requester_name.ilike(like)))
    return q


@bp.route("/", strict_slashes=False)
@login_required
def list_tickets():
    require_role("technician")
    return jsonify([t.to_dict() for t in _filtered().all()])


@bp.route("/mine")
@login_required
def my_tickets():
    q = (RepairTicket.query.filter(RepairTicket.requester_id == current_user.id)
         .order_by(RepairTicket.created_at.desc()))
    return jsonify([t.to_dict() for t in q.all()])


@bp.route("/stats")
@login_required
def stats():
    return jsonify(repair_stats())


@bp.route("/<int:ticket_id>")
@login_required
def view_ticket(ticket_id):
    return jsonify(get_ticket(ticket_id).to_dict())


# --------- CREAR ---------
@bp.route("/new", methods=["POST"])
@login_required
def new_ticket():
    form = request.form
    ticket = create_ticket(
        {k: form.get(k) for k in ("phone", "room", "position")},
        form.get("description"),
        request.files.getlist("images"),
        zone=form.get("zone") or "junior_high",
        user=current_actor(),
    )
    return jsonify(ticket.to_dict()), 201


# --------- ACTUALIZAR ---------
@bp.route("/<int:ticket_id>/update", methods=["POST"])
@login_required
def edit_ticket(ticket_id):
    require_role("technician")
    data = _payload()
    ticket = update_ticket(ticket_id, data.get("status"), data.get("technician_note"),
                           completion_image=request.files.get("completion_image"),
                           technician=current_actor())
    return jsonify(ticket.to_dict())


@bp.route("/<int:ticket_id>/use-part", methods=["POST"])
@login_required
def use_part(ticket_id):
    require_role("technician")
    data = _payload()
    ticket = consume_part(ticket_id, data.get("product_id"), data.get("quantity"),
                          data.get("signature"), technician=current_actor())
    return jsonify(ticket.to_dict())


# --------- EXPORTS ---------
HEADERS = ["id", "created", "room", "zone", "requester", "phone", "description", "status",
           "technician", "note", "parts"]


def _rows():
    return [[t.id, fmt_local(t.created_at), t.room, t.zone, t.requester_name, t.phone,
             t.description, t.status, t.technician_name or "", t.technician_note or "",
             ", ".join(f"{p.get('name')} x{p.get('quantity')}" for p in (t.parts_used or []))]
            for t in _filtered().all()]


@bp.route("/export.csv")
@login_required
def export_csv():
    require_role("technician")
    return stream_csv("repairs.csv", HEADERS, _rows())


@bp.route("/export.xlsx")
@login_required
def export_xlsx():
    require_role("technician")
    return stream_xlsx("repairs.xlsx", HEADERS, _rows(), sheet_title="Repairs")
