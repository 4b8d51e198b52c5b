# schoolit/time_helpers.py
from datetime import datetime
from zoneinfo import ZoneInfo
from flask import current_app

UTC = ZoneInfo("UTC")


def app_tz():
    return current_app.config.get("APP_TZ", ZoneInfo("Asia/Bangkok"))


def now_local():
    return datetime.now(app_tz())


def to_local(dt):
    if dt is None:
        return None
    tz = app_tz()
    naive_as = (current_app.config.get("NAIVE_AS") or "UTC").upper()
    if dt.tzinfo is None:
        # las columnas guardan UTC sin tzinfo
        dt = dt.replace(tzinfo=UTC if naive_as == "UTC" else tz)
    return dt.astimezone(tz)


def to_utc_naive(dt):
    """Normaliza un datetime (con o sin tz local) al UTC ingenuo de las columnas."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=app_tz())
    return dt.astimezone(UTC).replace(tzinfo=None)


def parse_date(s):
    try:
        return datetime.strptime(s, "%Y-%m-%d").date() if s else None
    except (TypeError, ValueError):
        return None


def parse_datetime(s):
    """ISO 8601 en hora local -> UTC ingenuo. None si no se puede parsear."""
    if not s:
        return None
    try:
        return to_utc_naive(datetime.fromisoformat(str(s).strip()))
    except ValueError:
        return None


def fmt_local(dt, fmt="%Y-%m-%d %H:%M"):
    if not dt:
        return ""
    return to_local(dt).strftime(fmt)
