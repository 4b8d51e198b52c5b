import os
import logging
from zoneinfo import ZoneInfo
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager
from apscheduler.schedulers.background import BackgroundScheduler
from pytz import timezone as _pytz_tz

# Extensiones globales
db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
scheduler = BackgroundScheduler()


def _env_bool(name, default="false"):
    return (os.environ.get(name, default) or "").lower() in ("1", "true", "yes", "on")


def mask_db_url(url):
    if not url or "://" not in url or "@" not in url:
        return url
    scheme, rest = url.split("://", 1)
    creds, tail = rest.split("@", 1)
    user = creds.split(":", 1)[0]
    return f"{scheme}://{user}:***@{tail}"


def create_app(overrides=None):
    app = Flask(__name__)

    # --- Config básica ---
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "devkey-change-me")
    app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get("DATABASE_URL", "sqlite:///schoolit.db")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["ADMIN_PASSWORD"] = os.environ.get("ADMIN_PASSWORD", "admin")

    # --- TZ / UTF-8 ---
    app.config["TZ_NAME"] = os.environ.get("TZ_NAME", "Asia/Bangkok")
    app.config["NAIVE_AS"] = os.environ.get("NAIVE_AS", "UTC")
    app.config["JSON_AS_ASCII"] = False

    # --- Uploads (blob store) ---
    app.config["UPLOAD_FOLDER"] = os.environ.get("UPLOAD_FOLDER") or os.path.join(app.root_path, "uploads")
    app.config["MAX_CONTENT_LENGTH"] = int(os.environ.get("MAX_CONTENT_LENGTH", 25 * 1024 * 1024))
    app.config["BLOB_URL_PREFIX"] = "/files"
    app.config["PDF_FONT_PATH"] = os.environ.get("PDF_FONT_PATH")

    # --- Notificaciones salientes (outbox) ---
    app.config["NOTIFY_REPAIR_CREATED_URL"] = os.environ.get("NOTIFY_REPAIR_CREATED_URL")
    app.config["NOTIFY_REPAIR_COMPLETED_URL"] = os.environ.get("NOTIFY_REPAIR_COMPLETED_URL")
    app.config["NOTIFY_REPAIR_REMINDER_URL"] = os.environ.get("NOTIFY_REPAIR_REMINDER_URL")
    app.config["NOTIFY_TIMEOUT"] = float(os.environ.get("NOTIFY_TIMEOUT", "10"))
    app.config["NOTIFY_MAX_ATTEMPTS"] = int(os.environ.get("NOTIFY_MAX_ATTEMPTS", "5"))
    app.config["NOTIFY_BACKOFF_SECONDS"] = int(os.environ.get("NOTIFY_BACKOFF_SECONDS", "30"))
    app.config["NOTIFY_INTERVAL_SECONDS"] = int(os.environ.get("NOTIFY_INTERVAL_SECONDS", "60"))

    # --- Recordatorio de reparaciones ---
    app.config["REPAIR_STALE_DAYS"] = int(os.environ.get("REPAIR_STALE_DAYS", "2"))
    app.config["REMINDER_HOUR"] = int(os.environ.get("REMINDER_HOUR", "8"))
    app.config["REMINDER_MINUTE"] = int(os.environ.get("REMINDER_MINUTE", "0"))

    app.config["SCHEDULER_ENABLED"] = _env_bool("SCHEDULER_ENABLED", "true")
    app.config["LOG_LEVEL"] = os.environ.get("LOG_LEVEL", "INFO").upper()

    if overrides:
        app.config.update(overrides)

    app.config["APP_TZ"] = ZoneInfo(app.config["TZ_NAME"])
    app.logger.setLevel(getattr(logging, app.config["LOG_LEVEL"], logging.INFO))
    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)

    # --- Inicializar extensiones ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    @login_manager.unauthorized_handler
    def _unauthorized():
        return {"error": "กรุณาเข้าสู่ระบบ"}, 401

    from .models import User, Setting  # noqa
    from .errors import register_error_handlers
    from .auth import bp as auth_bp
    from .admin import bp as admin_bp
    from .inventory import bp as inventory_bp, inventory_cli
    from .repairs import bp as repairs_bp
    from .photography import bp as photography_bp
    from .videos import bp as videos_bp
    from .activity import bp as activity_bp, activities_cli
    from .reports import bp as reports_bp
    from .api_external import bp as external_bp
    from .storage import bp as files_bp

    # --- Registrar blueprints ---
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(inventory_bp, url_prefix="/inventory")
    app.register_blueprint(repairs_bp, url_prefix="/repairs")
    app.register_blueprint(photography_bp, url_prefix="/photography")
    app.register_blueprint(videos_bp, url_prefix="/videos")
    app.register_blueprint(activity_bp, url_prefix="/activities")
    app.register_blueprint(reports_bp, url_prefix="/reports")
    app.register_blueprint(external_bp, url_prefix="/api/external")
    app.register_blueprint(files_bp, url_prefix=app.config["BLOB_URL_PREFIX"])
    app.cli.add_command(activities_cli)
    app.cli.add_command(inventory_cli)
    register_error_handlers(app)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.logger.info("[BOOT] DB URL = %s", mask_db_url(app.config["SQLALCHEMY_DATABASE_URI"]))

    # --- DB mínima: admin y settings por defecto ---
    with app.app_context():
        db.create_all()
        if not User.query.filter_by(username="admin").first():
            User.create_user("admin", app.config["ADMIN_PASSWORD"], role="admin", display_name="Administrator")
        if not db.session.get(Setting, 1):
            db.session.add(Setting(id=1))
            db.session.commit()

    # --- Forzar UTF-8 en JSON ---
    @app.after_request
    def _force_utf8(resp):
        if resp.mimetype == "application/json":
            resp.headers["Content-Type"] = "application/json; charset=utf-8"
        return resp

    # ====================== Jobs (scheduler) ======================
    def deliver_notifications_job():
        from .notifications import deliver_pending
        with app.app_context():
            app.logger.debug("[scheduler] run deliver_notifications_job")
            deliver_pending()

    def repair_reminder_job():
        from .repair_workflow import enqueue_stale_reminders
        with app.app_context():
            app.logger.info("[scheduler] run repair_reminder_job")
            enqueue_stale_reminders()

    app.deliver_notifications_job = deliver_notifications_job
    app.repair_reminder_job = repair_reminder_job

    # ====================== Scheduler (start) ======================
    should_start = (not app.debug) or (os.environ.get("WERKZEUG_RUN_MAIN") in ("true", "True", "1"))
    if app.config["SCHEDULER_ENABLED"] and not app.testing and not scheduler.running and should_start:
        scheduler.configure(timezone=_pytz_tz(app.config["TZ_NAME"]))
        scheduler.add_job(
            deliver_notifications_job, "interval",
            seconds=app.config["NOTIFY_INTERVAL_SECONDS"], id="deliver_notifications", replace_existing=True
        )
        scheduler.add_job(
            repair_reminder_job, "cron",
            hour=app.config["REMINDER_HOUR"], minute=app.config["REMINDER_MINUTE"],
            id="repair_reminder", replace_existing=True
        )
        scheduler.start()
        app.logger.info("[scheduler] iniciado (debug=%s, interval=%ss)", app.debug, app.config["NOTIFY_INTERVAL_SECONDS"])

    return app
