"""Libro de inventario: cambios de stock por préstamo, devolución y requisición.

Los ítems bulk se cuentan (``quantity`` unidades, ``borrowed_count`` prestadas);
los unique llevan su disponibilidad solo en ``status``. El stock disponible no
se guarda, siempre es ``quantity - borrowed_count``.

Cada cambio de stock es un único UPDATE condicional cuyo WHERE repite la
precondición: de dos peticiones que compiten por la última unidad, la que
pierde no encuentra fila y recibe ``ConflictError``. El cambio, su
transacción y la entrada de actividad se commitean juntos.
"""
import uuid
from datetime import datetime

from flask import current_app
from sqlalchemy import update, case, func, or_, and_

from . import db
from .models import Product, Transaction, ActivityLog, PRODUCT_STATUSES, PRODUCT_TYPES, BORROWED_STATUSES
from .errors import ValidationError, NotFound, ConflictError
from .activity import log_activity
from .storage import put_signature
from .time_helpers import parse_date

REQUISITIONED_STATUSES = ("requisitioned", "เบิกแล้ว", "unavailable", "out_of_stock")
STATUS_FILTERS = ("all", "available", "borrowed", "maintenance", "requisitioned")

_qty = func.coalesce(Product.quantity, 0)
_borrowed = func.coalesce(Product.borrowed_count, 0)


def get_product(product_id):
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFound("ไม่พบรายการอุปกรณ์")
    return product


def available_stock(product):
    return product.available_stock


def _user_fields(user, fallback_name=None):
    if user is not None and getattr(user, "is_authenticated", False):
        return user.name, getattr(user, "email", None), user.id
    return fallback_name or "Unknown", None, None


def _required(data, *fields, message="กรุณากรอกข้อมูลให้ครบถ้วน"):
    values = {f: (str(data.get(f) or "")).strip() for f in fields}
    if not all(values.values()):
        raise ValidationError(message)
    return values


def _conditional_update(product, conditions, values):
    """UPDATE products SET values WHERE id = product.id AND conditions, en una sola sentencia."""
    values = dict(values, updated_at=datetime.utcnow())
    stmt = (update(Product)
            .where(Product.id == product.id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False))
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        db.session.rollback()
        raise ConflictError("รายการนี้ถูกเปลี่ยนแปลงโดยผู้อื่น กรุณาลองใหม่อีกครั้ง")
    db.session.refresh(product)


def validate_withdraw(product, quantity):
    """Valida que se puedan retirar ``quantity`` unidades de un producto bulk.

    Compartido por requisiciones y repuestos de reparación; devuelve la
    cantidad como entero.
    """
    if not product.is_bulk:
        raise ValidationError("อุปกรณ์นี้ไม่ได้นับเป็นจำนวน")
    try:
        quantity = int(quantity)
    except (TypeError, ValueError):
        raise ValidationError(f"จำนวนไม่ถูกต้อง คงเหลือ: {product.available_stock}")
    if quantity <= 0 or quantity > product.available_stock:
        raise ValidationError(f"จำนวนไม่ถูกต้อง คงเหลือ: {product.available_stock}")
    return quantity


def withdraw_stock(product, quantity):
    _conditional_update(
        product,
        [Product.type == "bulk", _qty - _borrowed >= quantity],
        {
            "status": case((_qty - quantity <= 0, "requisitioned"), else_="available"),
            "quantity": _qty - quantity,
        },
    )


# --------- PRÉSTAMO ---------
def borrow(product_id, borrower, signature, user=None):
    product = get_product(product_id)
    info = _required(borrower, "room", "phone", "return_date")
    return_date = parse_date(info["return_date"])
    if return_date is None:
        raise ValidationError("วันที่คืนไม่ถูกต้อง")
    if product.available_stock <= 0:
        raise ValidationError("อุปกรณ์นี้ไม่ว่างให้ยืม")

    name, email, uid = _user_fields(user, borrower.get("name"))
    signature_url = put_signature("borrow", signature, uid)

    if product.is_bulk:
        _conditional_update(product, [Product.type == "bulk", _borrowed < _qty],
                            {"borrowed_count": _borrowed + 1})
    else:
        _conditional_update(product, [Product.status == "available"], {"status": "borrowed"})

    txn = Transaction(
        type="borrow", product_id=product.id, product_name=product.name,
        user_id=uid, user_name=name, user_email=email, room=info["room"], phone=info["phone"],
        quantity=1, signature_url=signature_url, status="active",
        return_date=return_date,
    )
    db.session.add(txn)
    log_activity("borrow", product.name, name, details=f"ห้อง {info['room']}",
                 image_url=product.image_url, signature_url=signature_url)
    db.session.commit()
    return txn


# --------- DEVOLUCIÓN ---------
def return_item(product_id, returner=None, signature=None, user=None):
    product = get_product(product_id)
    returner = returner or {}
    name, email, uid = _user_fields(user)
    returner_name = str(returner.get("returner_name") or "").strip() or name
    notes = str(returner.get("notes") or "").strip() or None

    if product.is_bulk:
        if (product.borrowed_count or 0) <= 0:
            raise ValidationError("ไม่มีรายการยืมค้างสำหรับอุปกรณ์นี้")
    elif product.status not in BORROWED_STATUSES:
        raise ValidationError("อุปกรณ์นี้ไม่ได้ถูกยืม")

    signature_url = put_signature("return", signature, uid) if signature else None

    if product.is_bulk:
        _conditional_update(product, [Product.type == "bulk", _borrowed > 0],
                            {"borrowed_count": _borrowed - 1})
    else:
        _conditional_update(product, [Product.status.in_(BORROWED_STATUSES)], {"status": "available"})

    # cierra el préstamo activo (uno por unidad en bulk)
    active = (Transaction.query
              .filter_by(type="borrow", product_id=product.id, status="active")
              .order_by(Transaction.timestamp.asc(), Transaction.id.asc()))
    to_close = active.limit(1).all() if product.is_bulk else active.all()
    now = datetime.utcnow()
    for t in to_close:
        t.status = "completed"
        t.returned_at = now
        t.returner_name = returner_name
        t.return_notes = notes
        t.return_signature_url = signature_url

    db.session.add(Transaction(
        type="return", product_id=product.id, product_name=product.name,
        user_id=uid, user_name=returner_name, user_email=email, quantity=1,
        signature_url=signature_url, status="completed", reason=notes,
    ))
    log_activity("return", product.name, name, details=notes,
                 image_url=product.image_url, signature_url=signature_url)
    db.session.commit()
    return product


# --------- REQUISICIÓN ---------
def requisition(product_id, requester, signature, quantity=None, user=None):
    product = get_product(product_id)
    room = _required(requester, "room", message="กรุณาระบุห้อง/สถานที่")["room"]
    reason = _required(requester, "reason", message="กรุณาระบุเหตุผลในการเบิก")["reason"]
    if product.is_bulk:
        quantity = validate_withdraw(product, quantity)
    else:
        if product.status != "available":
            raise ValidationError("อุปกรณ์นี้ไม่พร้อมให้เบิก")
        quantity = 1

    name, email, uid = _user_fields(user, requester.get("name"))
    signature_url = put_signature("req", signature, uid)

    if product.is_bulk:
        withdraw_stock(product, quantity)
    else:
        _conditional_update(product, [Product.status == "available"], {"status": "requisitioned"})

    txn = Transaction(
        type="requisition", product_id=product.id, product_name=product.name,
        user_id=uid, user_name=name, user_email=email, room=room,
        position=str(requester.get("position") or "").strip() or None, reason=reason,
        quantity=quantity, signature_url=signature_url, status="completed",
    )
    db.session.add(txn)
    details = f"จำนวน {quantity} เหตุผล: {reason}" if product.is_bulk else f"เหตุผล: {reason}"
    log_activity("requisition", product.name, name, details=details,
                 image_url=product.image_url, signature_url=signature_url, status="completed")
    db.session.commit()
    return txn


def restock(product_id, amount, user=None):
    product = get_product(product_id)
    if not product.is_bulk:
        raise ValidationError("อุปกรณ์นี้ไม่ได้นับเป็นจำนวน")
    try:
        amount = int(amount)
    except (TypeError, ValueError):
        raise ValidationError("จำนวนไม่ถูกต้อง")
    if amount <= 0:
        raise ValidationError("จำนวนไม่ถูกต้อง")
    _conditional_update(product, [Product.type == "bulk"], {
        "status": case((Product.status.in_(REQUISITIONED_STATUSES + ("available",)), "available"),
                       else_=Product.status),
        "quantity": _qty + amount,
    })
    name, _, _ = _user_fields(user)
    log_activity("update", product.name, name, details=f"เติมสต็อก +{amount} (คงเหลือ {product.quantity})")
    db.session.commit()
    return product


# --------- ALTA / EDICIÓN ---------
EDITABLE = ("name", "brand", "model", "location", "image_url", "category", "serial_number", "description")


def _int_or_none(val, field):
    if val in (None, ""):
        return None
    try:
        n = int(val)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} ต้องเป็นตัวเลข")
    if n < 0:
        raise ValidationError(f"{field} ต้องไม่ติดลบ")
    return n


def create_product(data, user=None):
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("กรุณาระบุชื่ออุปกรณ์")
    ptype = data.get("type") or "unique"
    if ptype not in PRODUCT_TYPES:
        raise ValidationError("ประเภทอุปกรณ์ไม่ถูกต้อง")
    quantity = _int_or_none(data.get("quantity"), "quantity")
    if ptype == "bulk" and quantity is None:
        raise ValidationError("กรุณาระบุจำนวน")
    stock_id = (data.get("stock_id") or "").strip() or f"STK-{uuid.uuid4().hex[:8].upper()}"
    if Product.query.filter_by(stock_id=stock_id).first():
        raise ValidationError("รหัสครุภัณฑ์นี้มีอยู่แล้ว")

    product = Product(type=ptype, stock_id=stock_id, quantity=quantity, borrowed_count=0,
                      status="requisitioned" if ptype == "bulk" and quantity == 0 else "available")
    for field in EDITABLE:
        val = data.get(field)
        if val is not None:
            setattr(product, field, str(val).strip() or None)
    product.name = name
    db.session.add(product)
    name_, _, _ = _user_fields(user)
    log_activity("add", product.name, name_, image_url=product.image_url)
    db.session.commit()
    return product


def update_product(product_id, data, user=None):
    product = get_product(product_id)
    for field in EDITABLE:
        if field in data:
            val = data.get(field)
            setattr(product, field, (str(val).strip() or None) if val is not None else None)
    if not product.name:
        raise ValidationError("กรุณาระบุชื่ออุปกรณ์")
    if "status" in data:
        if data["status"] not in PRODUCT_STATUSES:
            raise ValidationError("สถานะไม่ถูกต้อง")
        product.status = data["status"]
    if product.is_bulk and "quantity" in data:
        quantity = _int_or_none(data.get("quantity"), "quantity")
        if quantity is None or quantity < (product.borrowed_count or 0):
            raise ValidationError("จำนวนต้องไม่น้อยกว่าจำนวนที่ถูกยืมอยู่")
        product.quantity = quantity
        if "status" not in data:
            # mismo criterio que el alta: sin unidades libres queda como requisitioned
            product.status = "available" if quantity - (product.borrowed_count or 0) > 0 else "requisitioned"
    product.updated_at = datetime.utcnow()
    name, _, _ = _user_fields(user)
    log_activity("update", product.name, name, status=product.status)
    db.session.commit()
    return product


def delete_product(product_id, user=None):
    product = get_product(product_id)
    if (product.borrowed_count or 0) > 0 or product.status in BORROWED_STATUSES:
        raise ValidationError("ไม่สามารถลบอุปกรณ์ที่ถูกยืมอยู่ได้")
    name, _, _ = _user_fields(user)
    log_activity("delete", product.name, name, details=f"รหัส {product.stock_id}")
    # el historial conserva product_name aunque se borre el producto
    Transaction.query.filter_by(product_id=product.id).update({"product_id": None})
    db.session.delete(product)
    db.session.commit()


# --------- FILTROS / ESTADÍSTICAS ---------
def status_condition(filter_status):
    """Condición SQL de los filtros de la pantalla de inventario."""
    bulk = Product.type == "bulk"
    if filter_status == "available":
        return or_(Product.status == "available", and_(bulk, _qty > _borrowed))
    if filter_status == "borrowed":
        return or_(Product.status.in_(BORROWED_STATUSES), and_(bulk, _borrowed > 0))
    if filter_status == "maintenance":
        return Product.status == "maintenance"
    if filter_status == "requisitioned":
        return Product.status.in_(REQUISITIONED_STATUSES)
    return None


def search_products(filter_status="all", text=""):
    q = Product.query
    cond = status_condition(filter_status)
    if cond is not None:
        q = q.filter(cond)
    text = (text or "").strip()
    if text:
        like = f"%{text}%"
        q = q.filter(or_(Product.name.ilike(like), Product.brand.ilike(like),
                         Product.serial_number.ilike(like), Product.stock_id.ilike(like)))
    return q.order_by(Product.updated_at.desc())


def inventory_stats():
    """Contadores derivados de la tabla de productos en cada lectura."""
    stats = {"total": Product.query.count()}
    for key in ("available", "borrowed", "maintenance", "requisitioned"):
        stats[key] = Product.query.filter(status_condition(key)).count()
    return stats


# --------- RECONCILIACIÓN ---------
def _unreflected_returns(since=None):
    """Devoluciones del log que no cerraron su préstamo, agrupadas por producto.

    Por nombre de producto, las devoluciones registradas menos los préstamos
    ya cerrados son las que faltan reflejar; se toman las más recientes.
    """
    q = ActivityLog.query.filter(ActivityLog.action == "return")
    if since is not None:
        q = q.filter(ActivityLog.timestamp >= since)
    by_name = {}
    for a in q.order_by(ActivityLog.timestamp.asc(), ActivityLog.id.asc()):
        by_name.setdefault(a.product_name, []).append(a)
    pending = {}
    for name, returns in by_name.items():
        closed = (Transaction.query
                  .filter_by(type="borrow", product_name=name, status="completed").count())
        missing = len(returns) - closed
        if missing > 0:
            pending[name] = returns[-missing:]
    return pending


def _match_borrow(borrows, activity):
    """Préstamo activo anterior a la devolución: primero por nombre, si no el más antiguo."""
    candidates = [b for b in borrows if b.timestamp <= activity.timestamp]
    if not candidates:
        return None
    who = (activity.user_name or "").strip()
    for b in candidates:
        if who and (b.user_name or "").strip() == who:
            return b
    return candidates[0]


def reconcile_borrowed_counts(dry_run=True, since=None, user=None):
    """Repara préstamos y contadores desalineados con el historial.

    1. Cierra los préstamos activos cuya devolución quedó en el log de
       actividades pero no en la transacción.
    2. Recalcula ``borrowed_count`` (bulk) y el estado (unique) a partir de
       los préstamos que siguen activos.

    Con ``dry_run`` solo informa lo que cambiaría.
    """
    result = {"dryRun": dry_run, "transactionFixes": [], "borrowCountFixes": []}

    active = (Transaction.query.filter_by(type="borrow", status="active")
              .order_by(Transaction.timestamp.asc(), Transaction.id.asc()).all())
    by_name = {}
    for t in active:
        by_name.setdefault(t.product_name, []).append(t)

    closed_ids = set()
    for name, returns in _unreflected_returns(since).items():
        pool = by_name.get(name, [])
        for act in returns:
            borrow_txn = _match_borrow(pool, act)
            if borrow_txn is None:
                continue
            pool.remove(borrow_txn)
            closed_ids.add(borrow_txn.id)
            result["transactionFixes"].append({
                "activityId": act.id, "activityUser": act.user_name,
                "activityDate": act.timestamp.isoformat(), "productName": name,
                "borrowId": borrow_txn.id, "borrowerName": borrow_txn.user_name,
                "matchType": "name_match" if (borrow_txn.user_name or "").strip() == (act.user_name or "").strip()
                else "fifo",
            })
            if not dry_run:
                borrow_txn.status = "completed"
                borrow_txn.returned_at = act.timestamp
                borrow_txn.returner_name = act.user_name
                borrow_txn.return_notes = f"ซ่อมข้อมูลจากบันทึกกิจกรรม #{act.id}"

    actual = {}
    for t in active:
        if t.id not in closed_ids and t.product_id is not None:
            actual[t.product_id] = actual.get(t.product_id, 0) + 1

    for product in Product.query.order_by(Product.id.asc()):
        real = actual.get(product.id, 0)
        if product.is_bulk:
            real = min(real, product.quantity or 0)
            if (product.borrowed_count or 0) == real:
                continue
            fix = {"borrowedCount": real}
        elif real > 0 and product.status not in BORROWED_STATUSES:
            fix = {"status": "borrowed"}
        elif real == 0 and product.status in BORROWED_STATUSES:
            fix = {"status": "available"}
        else:
            continue
        result["borrowCountFixes"].append({
            "productId": product.id, "productName": product.name, "type": product.type,
            "oldBorrowedCount": product.borrowed_count or 0, "oldStatus": product.status,
            "activeBorrows": real, **fix,
        })
        if not dry_run:
            product.borrowed_count = fix.get("borrowedCount", product.borrowed_count)
            product.status = fix.get("status", product.status)
            product.updated_at = datetime.utcnow()

    result["summary"] = {"transactionsFixed": len(result["transactionFixes"]),
                         "borrowCountsFixed": len(result["borrowCountFixes"])}
    if dry_run:
        return result
    if result["transactionFixes"] or result["borrowCountFixes"]:
        name, _, _ = _user_fields(user, "system")
        s = result["summary"]
        log_activity("update", "inventory", name,
                     details=f"ซ่อมข้อมูลสต็อก: ปิดรายการยืม {s['transactionsFixed']} "
                             f"ปรับยอด {s['borrowCountsFixed']}")
    db.session.commit()
    current_app.logger.info("inventory reconcile: %s", result["summary"])
    return result
