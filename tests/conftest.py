import base64
import io

import pytest
from werkzeug.datastructures import FileStorage

from schoolit import create_app, db
from schoolit.models import User, Product

SIGNATURE = "data:image/png;base64," + base64.b64encode(b"\x89PNG\r\n\x1a\nsignature-pad").decode()

BORROWER = {"room": "ม.4/2", "phone": "0812345678", "return_date": "2026-11-01"}
REQUESTER = {"room": "ห้องพักครู", "reason": "ใช้ในห้องเรียน", "position": "ครู"}


@pytest.fixture
def app(tmp_path):
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test",
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "UPLOAD_FOLDER": str(tmp_path / "uploads"),
        "SCHEDULER_ENABLED": False,
        "ADMIN_PASSWORD": "admin",
        "NOTIFY_REPAIR_CREATED_URL": None,
        "NOTIFY_REPAIR_COMPLETED_URL": None,
        "NOTIFY_REPAIR_REMINDER_URL": None,
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(username, role="user", **extra):
    extra.setdefault("display_name", username.title())
    extra.setdefault("email", f"{username}@school.test")
    return User.create_user(username, "pw", role=role, **extra)


@pytest.fixture
def users(app):
    return {
        "admin": User.query.filter_by(username="admin").first(),
        "tech": make_user("tech", "technician", responsibility="junior_high", line_user_id="U-tech"),
        "photo": make_user("photo", "photographer"),
        "teacher": make_user("teacher"),
    }


def login(client, username, password="pw"):
    resp = client.post("/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.get_json()
    return resp


def make_product(**kw):
    kw.setdefault("name", "Projector")
    kw.setdefault("stock_id", f"STK-{kw['name']}-{Product.query.count() + 1}")
    kw.setdefault("type", "unique")
    kw.setdefault("status", "available")
    if kw["type"] == "bulk":
        kw.setdefault("borrowed_count", 0)
    p = Product(**kw)
    db.session.add(p)
    db.session.commit()
    return p


def image(name="photo.jpg", data=b"fake-jpeg-bytes"):
    return FileStorage(stream=io.BytesIO(data), filename=name, content_type="image/jpeg")
