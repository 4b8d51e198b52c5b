from flask import Blueprint, request, jsonify
from flask_login import login_user, logout_user, login_required, current_user
from .models import User
from .errors import Forbidden, ValidationError

bp = Blueprint("auth", __name__)


def has_role(*roles):
    return current_user.is_authenticated and getattr(current_user, "role", "user") in roles


def require_role(*roles):
    """Lanza ``Forbidden`` si el usuario no tiene alguno de ``roles`` (admin siempre pasa)."""
    if not has_role("admin", *roles):
        raise Forbidden("คุณไม่มีสิทธิ์ดำเนินการนี้")


def require_admin():
    require_role("admin")


def current_actor():
    """El ``User`` logueado, o None fuera de una petición con usuario."""
    if current_user and current_user.is_authenticated:
        return current_user._get_current_object()
    return None


@bp.route("/login", methods=["POST"])
def login():
    data = request.get_json(silent=True) or request.form
    username = (data.get("username") or "").strip()
    password = (data.get("password") or "").strip()
    if not username or not password:
        raise ValidationError("กรุณากรอกชื่อผู้ใช้และรหัสผ่าน")
    user = User.query.filter_by(username=username).first()
    if user and user.check_password(password):
        login_user(user)
        return jsonify(user.to_dict())
    return jsonify({"error": "ชื่อผู้ใช้หรือรหัสผ่านไม่ถูกต้อง"}), 401


@bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"ok": True})


@bp.route("/me")
@login_required
def me():
    return jsonify(current_user.to_dict())
