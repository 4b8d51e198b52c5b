"""Almacén de archivos sobre la carpeta de uploads.

Cada archivo queda en ``UPLOAD_FOLDER/<path>`` y se sirve en ``/files/<path>``;
la URL devuelta es lo que guardan los registros. Las subidas no son
transaccionales: un archivo escrito antes de un commit fallido queda en disco.
"""
import base64
import binascii
import os
import time
from pathlib import Path

from flask import Blueprint, current_app, send_from_directory, abort
from werkzeug.utils import secure_filename

from .errors import ValidationError

bp = Blueprint("files", __name__)

ALLOWED_IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp"}
MAX_REPAIR_IMAGES = 5


def _base_dir() -> Path:
    base = current_app.config.get("UPLOAD_FOLDER") or os.path.join(current_app.root_path, "uploads")
    return Path(base)


def _unsafe_path(path: str) -> bool:
    if not path or ".." in path.split("/"):
        return True
    return os.path.isabs(path) or ":" in path or "\\" in path


def _url_prefix() -> str:
    return current_app.config.get("BLOB_URL_PREFIX", "/files").rstrip("/")


def timestamp_ms() -> int:
    return int(time.time() * 1000)


def allowed_image(filename: str) -> bool:
    return "." in filename and filename.rsplit(".", 1)[1].lower() in ALLOWED_IMAGE_EXTENSIONS


def put_bytes(path: str, data: bytes) -> str:
    """Escribe ``data`` en ``path`` (relativo, con barras /) y devuelve su URL."""
    if _unsafe_path(path):
        raise ValueError(f"unsafe blob path: {path!r}")
    target = _base_dir() / path
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)
    current_app.logger.debug("blob stored %s (%d bytes)", path, len(data))
    return f"{_url_prefix()}/{path}"


def put_file(folder: str, storage_file, name: str = None) -> str:
    """Guarda un ``FileStorage`` de werkzeug en ``folder/{timestamp}_{filename}``."""
    filename = secure_filename(storage_file.filename or "") or "upload.bin"
    if not allowed_image(filename):
        raise ValidationError(f"ไฟล์ไม่ได้รับอนุญาต: {storage_file.filename}")
    name = name or f"{timestamp_ms()}_{filename}"
    return put_bytes(f"{folder}/{name}", storage_file.read())


def path_from_url(url: str):
    """Ruta del archivo para una URL de ``put_bytes``; None si la URL es externa."""
    prefix = _url_prefix() + "/"
    if not url or not url.startswith(prefix):
        return None
    return url[len(prefix):] or None


def delete_blob(url: str) -> bool:
    path = path_from_url(url)
    if not path or _unsafe_path(path):
        return False
    target = _base_dir() / path
    try:
        target.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        current_app.logger.warning("could not delete blob %s: %s", path, e)
        return False
    return True


def decode_signature(data_url: str) -> bytes:
    """Decodifica la firma ``data:image/png;base64,...`` del pad.

    Una firma vacía (ausente o en blanco) es un error de validación.
    """
    if not data_url or not str(data_url).strip():
        raise ValidationError("กรุณาลงลายมือชื่อ")
    raw = str(data_url).strip()
    if raw.startswith("data:"):
        header, _, raw = raw.partition(",")
        if ";base64" not in header:
            raise ValidationError("รูปแบบลายเซ็นไม่ถูกต้อง")
    try:
        data = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("รูปแบบลายเซ็นไม่ถูกต้อง")
    if not data:
        raise ValidationError("กรุณาลงลายมือชื่อ")
    return data


def put_signature(prefix: str, data_url: str, user_id=None) -> str:
    """``signatures/{prefix}_{timestamp}_{userId}.png``"""
    data = decode_signature(data_url)
    return put_bytes(f"signatures/{prefix}_{timestamp_ms()}_{user_id or 'anonymous'}.png", data)


@bp.route("/<path:path>")
def serve(path):
    if _unsafe_path(path):
        abort(404)
    p = _base_dir() / path
    if not p.is_file():
        abort(404)
    return send_from_directory(p.parent.as_posix(), p.name, as_attachment=False)
