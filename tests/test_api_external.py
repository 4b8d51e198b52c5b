from datetime import datetime, timedelta

from schoolit import db
from schoolit.api_external import PLACEHOLDER_COVER
from schoolit.models import PhotographyJob


def _job(n, status="completed", permalink=True, cover=None):
    end = datetime(2026, 9, 1, 10, 0) + timedelta(days=n)
    job = PhotographyJob(title=f"กิจกรรม {n}", location="หอประชุม",
                         start_time=end - timedelta(hours=2), end_time=end,
                         assignees=[], assignee_names=[], status=status,
                         cover_image=cover,
                         facebook_permalink=f"https://facebook.com/p/{n}" if permalink else None,
                         facebook_caption=f"คำบรรยาย {n}")
    db.session.add(job)
    db.session.commit()
    return job


def test_returns_latest_six_published_jobs(app, client):
    for n in range(8):
        _job(n, cover=f"/files/covers/{n}.jpg")

    resp = client.get("/api/external/activities")

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert [a["title"] for a in body["data"]] == [f"กิจกรรม {n}" for n in range(7, 1, -1)]
    first = body["data"][0]
    assert first["facebookLink"] == "https://facebook.com/p/7"
    assert first["description"] == "คำบรรยาย 7"
    assert first["location"] == "หอประชุม"
    assert first["date"].startswith("2026-09-08T10:00:00")


def test_excludes_unposted_and_unfinished_jobs(app, client):
    _job(1, permalink=False)
    _job(2, status="assigned")
    _job(3, status="cancelled")
    kept = _job(4)

    data = client.get("/api/external/activities").get_json()["data"]
    assert [a["id"] for a in data] == [kept.id]


def test_missing_cover_uses_placeholder(app, client):
    _job(1)
    data = client.get("/api/external/activities").get_json()["data"]
    assert data[0]["coverImage"] == PLACEHOLDER_COVER


def test_cors_and_cache_headers(app, client):
    resp = client.get("/api/external/activities", headers={"Origin": "https://www.school.ac.th"})
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert resp.headers["Cache-Control"] == "s-maxage=60, stale-while-revalidate=300"


def test_preflight_has_empty_body(app, client):
    resp = client.options("/api/external/activities", headers={
        "Origin": "https://www.school.ac.th",
        "Access-Control-Request-Method": "GET",
        "Access-Control-Request-Headers": "Content-Type",
    })
    assert resp.status_code == 200
    assert resp.data == b""
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert "GET" in resp.headers["Access-Control-Allow-Methods"]
    assert "OPTIONS" in resp.headers["Access-Control-Allow-Methods"]
    assert resp.headers["Access-Control-Allow-Headers"].lower() == "content-type"


def test_empty_list_without_login(app, client):
    resp = client.get("/api/external/activities")
    assert resp.get_json() == {"success": True, "data": []}


def test_storage_failure_returns_500(app, client, monkeypatch):
    from schoolit import api_external

    def boom(*a, **kw):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(api_external, "published_activities", boom)
    resp = client.get("/api/external/activities")
    assert resp.status_code == 500
    assert resp.get_json() == {"success": False, "error": "database unavailable"}
