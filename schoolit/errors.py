from flask import jsonify, current_app
from werkzeug.exceptions import HTTPException
from . import db


class AppError(Exception):
    """Error con mensaje para el usuario (en tailandés) y código HTTP."""
    status_code = 400

    def __init__(self, message, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self):
        data = {"error": self.message}
        data.update(self.extra)
        return data


class ValidationError(AppError):
    status_code = 400


class Forbidden(AppError):
    status_code = 403


class NotFound(AppError):
    status_code = 404


class ConflictError(AppError):
    """La precondición ya no se cumple al momento del commit; se puede reintentar."""
    status_code = 409

    def to_dict(self):
        data = super().to_dict()
        data["retryable"] = True
        return data


class InvalidTransition(AppError):
    status_code = 409

    def __init__(self, current, target):
        super().__init__(f"ไม่สามารถเปลี่ยนสถานะจาก {current} เป็น {target} ได้", current=current, target=target)
        self.current = current
        self.target = target


class DuplicateSubmission(AppError):
    status_code = 409


def register_error_handlers(app):
    @app.errorhandler(AppError)
    def _app_error(e):
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def _http_error(e):
        return jsonify({"error": e.description}), e.code

    @app.errorhandler(Exception)
    def _unexpected(e):
        db.session.rollback()
        current_app.logger.exception("Unhandled error: %s", e)
        return jsonify({"error": "เกิดข้อผิดพลาดในการบันทึก กรุณาลองใหม่อีกครั้ง"}), 500
