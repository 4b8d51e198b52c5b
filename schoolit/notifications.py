"""Notificaciones salientes mediante una tabla outbox.

Las operaciones solo hacen ``enqueue`` de una fila dentro de su propia
transacción; el job ``deliver_pending`` envía por POST las filas vencidas al
webhook de su tipo y reintenta con backoff exponencial. Un fallo de envío
nunca llega a la petición que generó la notificación.
"""
from datetime import datetime, timedelta

import requests
from flask import current_app

from . import db
from .models import Notification, Setting

KINDS = {
    "repair_created": ("notify_repair_created_url", "NOTIFY_REPAIR_CREATED_URL"),
    "repair_completed": ("notify_repair_completed_url", "NOTIFY_REPAIR_COMPLETED_URL"),
    "repair_reminder": ("notify_repair_reminder_url", "NOTIFY_REPAIR_REMINDER_URL"),
}


def get_settings():
    return db.session.get(Setting, 1)


def enqueue(kind, payload):
    """Agrega una notificación pendiente a la sesión; el commit lo hace quien llama."""
    if kind not in KINDS:
        raise ValueError(f"unknown notification kind: {kind!r}")
    n = Notification(kind=kind, payload=payload, status="pending", attempts=0,
                     next_attempt_at=datetime.utcnow())
    db.session.add(n)
    return n


def resolve_url(kind):
    """Primero la fila de settings, después el entorno."""
    column, config_key = KINDS[kind]
    s = get_settings()
    url = getattr(s, column, None) if s else None
    return (url or current_app.config.get(config_key) or "").strip() or None


def _enabled():
    s = get_settings()
    return s is None or s.notifications_enabled is None or bool(s.notifications_enabled)


def _post(url, payload):
    resp = requests.post(url, json=payload, timeout=current_app.config.get("NOTIFY_TIMEOUT", 10))
    resp.raise_for_status()
    return resp


def deliver_one(n):
    now = datetime.utcnow()
    url = resolve_url(n.kind)
    if not url:
        n.status = "skipped"
        n.last_error = "no webhook configured"
        current_app.logger.info("notification %s (%s) skipped: no URL", n.id, n.kind)
        return n.status
    try:
        _post(url, n.payload)
    except requests.RequestException as e:
        n.attempts = (n.attempts or 0) + 1
        n.last_error = str(e)[:1000]
        max_attempts = current_app.config.get("NOTIFY_MAX_ATTEMPTS", 5)
        if n.attempts >= max_attempts:
            n.status = "failed"
            current_app.logger.error("notification %s (%s) failed after %d attempts: %s",
                                     n.id, n.kind, n.attempts, e)
        else:
            backoff = current_app.config.get("NOTIFY_BACKOFF_SECONDS", 30) * (2 ** (n.attempts - 1))
            n.next_attempt_at = now + timedelta(seconds=backoff)
            current_app.logger.warning("notification %s (%s) attempt %d failed, retry in %ss: %s",
                                       n.id, n.kind, n.attempts, backoff, e)
        return n.status
    n.attempts = (n.attempts or 0) + 1
    n.status = "sent"
    n.sent_at = now
    n.last_error = None
    current_app.logger.info("notification %s (%s) sent", n.id, n.kind)
    return n.status


def deliver_pending(limit=50):
    """Envía las notificaciones pendientes vencidas. Devuelve un resumen estado -> cantidad."""
    summary = {"sent": 0, "failed": 0, "skipped": 0, "pending": 0}
    if not _enabled():
        current_app.logger.debug("[scheduler] notifications disabled in settings")
        return summary
    due = (Notification.query
           .filter(Notification.status == "pending",
                   Notification.next_attempt_at <= datetime.utcnow())
           .order_by(Notification.next_attempt_at.asc(), Notification.id.asc())
           .limit(limit).all())
    for n in due:
        summary[deliver_one(n)] += 1
        db.session.commit()
    if due:
        current_app.logger.info("[scheduler] notifications delivered: %s", summary)
    return summary
