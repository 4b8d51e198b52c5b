from collections import Counter
from datetime import datetime, time
from flask import Blueprint, request, jsonify
from flask_login import login_required
from .activity import recent_activities
from .auth import require_role
from .ledger import inventory_stats
from .models import Transaction, PhotographyJob, RepairTicket
from .repair_workflow import repair_stats
from .time_helpers import parse_date, fmt_local
from .utils_export import stream_csv, stream_xlsx, stream_pdf

bp = Blueprint("reports", __name__)


@bp.route("/", strict_slashes=False)
@login_required
def dashboard():
    jobs = Counter(s for (s,) in PhotographyJob.query.with_entities(PhotographyJob.status))
    zones = Counter(z or "none" for (z,) in RepairTicket.query
                    .filter(RepairTicket.status.in_(("pending", "in_progress", "waiting_parts")))
                    .with_entities(RepairTicket.zone))
    return jsonify({
        "inventory": inventory_stats(),
        "repairs": repair_stats(),
        "openRepairsByZone": dict(zones),
        "photography": {s: jobs.get(s, 0) for s in ("assigned", "completed", "cancelled")},
        "recentActivities": [a.to_dict() for a in recent_activities(10)],
        "recentRepairActivities": [a.to_dict() for a in recent_activities(10, repair_only=True)],
    })


# --------- MOVIMIENTOS ---------
def _transactions():
    start = parse_date(request.args.get("start"))
    end = parse_date(request.args.get("end"))
    q = Transaction.query
    t = (request.args.get("type") or "").strip()
    if t:
        q = q.filter(Transaction.type == t)
    if start: q = q.filter(Transaction.timestamp >= datetime.combine(start, time.min))
    if end: q = q.filter(Transaction.timestamp <= datetime.combine(end, time.max))
    return q.order_by(Transaction.timestamp.desc()).all()


HEADERS = ["id", "date", "type", "item", "qty", "user", "room", "status", "return_date", "returned_at"]


def _rows():
    return [[t.id, fmt_local(t.timestamp), t.type, t.product_name, t.quantity, t.user_name,
             t.room or "", t.status, t.return_date or "", fmt_local(t.returned_at)]
            for t in _transactions()]


@bp.route("/transactions")
@login_required
def transactions_report():
    require_role("admin")
    return jsonify([t.to_dict() for t in _transactions()])


@bp.route("/transactions.csv")
@login_required
def transactions_csv():
    require_role("admin")
    return stream_csv("transactions.csv", HEADERS, _rows())


@bp.route("/transactions.xlsx")
@login_required
def transactions_xlsx():
    require_role("admin")
    return stream_xlsx("transactions.xlsx", HEADERS, _rows(), sheet_title="Transactions")


@bp.route("/transactions.pdf")
@login_required
def transactions_pdf():
    require_role("admin")
    return stream_pdf("transactions.pdf", "Transactions", HEADERS, _rows())
