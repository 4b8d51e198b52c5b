import click
from flask import Blueprint, request, jsonify
from flask.cli import AppGroup
from flask_login import login_required, current_user

from . import ledger
from .auth import require_admin, current_actor, has_role
from .models import Product, Transaction
from .storage import put_file
from .utils_export import stream_csv, stream_xlsx, stream_pdf

bp = Blueprint("inventory", __name__)
inventory_cli = AppGroup("inventory", help="Inventory maintenance.")


def _payload():
    return request.get_json(silent=True) or request.form


def _with_image(data):
    data = dict(data.items())
    f = request.files.get("image")
    if f and f.filename:
        data["image_url"] = put_file("products", f)
    return data


# --------- LISTADO / FILTRO ---------
@bp.route("/", strict_slashes=False)
@login_required
def list_items():
    status = request.args.get("status") or "all"
    if status not in ledger.STATUS_FILTERS:
        status = "all"
    items = ledger.search_products(status, request.args.get("q", "")).all()
    return jsonify([p.to_dict() for p in items])


@bp.route("/stats")
@login_required
def stats():
    return jsonify(ledger.inventory_stats())


@bp.route("/<int:item_id>")
@login_required
def view_item(item_id):
    p = ledger.get_product(item_id)
    data = p.to_dict()
    data["activeBorrows"] = [t.to_dict() for t in
                             p.transactions.filter_by(type="borrow", status="active")
                             .order_by(Transaction.timestamp.desc())]
    return jsonify(data)


# --------- ALTA / EDICIÓN ---------
@bp.route("/new", methods=["POST"])
@login_required
def new_item():
    require_admin()
    p = ledger.create_product(_with_image(_payload()), user=current_actor())
    return jsonify(p.to_dict()), 201


@bp.route("/<int:item_id>/edit", methods=["POST"])
@login_required
def edit_item(item_id):
    require_admin()
    p = ledger.update_product(item_id, _with_image(_payload()), user=current_actor())
    return jsonify(p.to_dict())


@bp.route("/<int:item_id>/delete", methods=["POST"])
@login_required
def delete_item(item_id):
    require_admin()
    ledger.delete_product(item_id, user=current_actor())
    return jsonify({"ok": True})


@bp.route("/<int:item_id>/restock", methods=["POST"])
@login_required
def restock_item(item_id):
    require_admin()
    p = ledger.restock(item_id, _payload().get("amount"), user=current_actor())
    return jsonify(p.to_dict())


# --------- MOVIMIENTOS ---------
@bp.route("/<int:item_id>/borrow", methods=["POST"])
@login_required
def borrow_item(item_id):
    data = _payload()
    txn = ledger.borrow(item_id, data, data.get("signature"), user=current_actor())
    return jsonify(txn.to_dict()), 201


@bp.route("/<int:item_id>/return", methods=["POST"])
@login_required
def return_item(item_id):
    data = _payload()
    p = ledger.return_item(item_id, data, data.get("signature"), user=current_actor())
    return jsonify(p.to_dict())


@bp.route("/<int:item_id>/requisition", methods=["POST"])
@login_required
def requisition_item(item_id):
    data = _payload()
    txn = ledger.requisition(item_id, data, data.get("signature"), quantity=data.get("quantity"),
                             user=current_actor())
    return jsonify(txn.to_dict()), 201


@bp.route("/transactions")
@login_required
def transactions():
    q = Transaction.query
    if not has_role("admin") or request.args.get("mine") in ("1", "true"):
        q = q.filter(Transaction.user_id == current_user.id)
    t = (request.args.get("type") or "").strip()
    if t:
        q = q.filter(Transaction.type == t)
    if request.args.get("active") in ("1", "true"):
        q = q.filter(Transaction.status == "active")
    rows = q.order_by(Transaction.timestamp.desc(), Transaction.id.desc()).limit(500).all()
    return jsonify([r.to_dict() for r in rows])


# --------- EXPORTS ---------
HEADERS = ["id", "stock_id", "name", "brand", "model", "type", "status", "quantity", "borrowed",
           "available", "category", "serial_number", "location", "updated_at"]


def _rows():
    items = Product.query.order_by(Product.name.asc()).all()
    return [[p.id, p.stock_id, p.name, p.brand, p.model, p.type, p.status, p.quantity,
             p.borrowed_count, p.available_stock, p.category, p.serial_number, p.location,
             p.updated_at] for p in items]


@bp.route("/export.csv")
@login_required
def export_csv():
    return stream_csv("inventory.csv", HEADERS, _rows())


@bp.route("/export.xlsx")
@login_required
def export_xlsx():
    return stream_xlsx("inventory.xlsx", HEADERS, _rows(), sheet_title="Inventory")


@bp.route("/export.pdf")
@login_required
def export_pdf():
    return stream_pdf("inventory.pdf", "Inventory", HEADERS, _rows())


# --------- CLI ---------
@inventory_cli.command("reconcile")
@click.option("--apply", "apply_changes", is_flag=True, help="Write the fixes instead of a dry run.")
@click.option("--since", type=click.DateTime(formats=["%Y-%m-%d"]), default=None,
              help="Only consider return activities from this date (UTC).")
def reconcile_command(apply_changes, since):
    """Cierra préstamos ya devueltos y recuenta las unidades prestadas."""
    result = ledger.reconcile_borrowed_counts(dry_run=not apply_changes, since=since)
    for fix in result["transactionFixes"]:
        click.echo(f"borrow #{fix['borrowId']} {fix['productName']}: returned by "
                   f"{fix['activityUser']} ({fix['matchType']})")
    for fix in result["borrowCountFixes"]:
        click.echo(f"product #{fix['productId']} {fix['productName']}: "
                   f"{fix['oldBorrowedCount']}/{fix['oldStatus']} -> {fix['activeBorrows']} active")
    s = result["summary"]
    mode = "applied" if apply_changes else "dry run"
    click.echo(f"{mode}: {s['transactionsFixed']} borrows closed, {s['borrowCountsFixed']} products fixed")
