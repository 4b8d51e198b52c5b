import pytest

from schoolit import db, videos
from schoolit.errors import ValidationError
from schoolit.models import ActivityLog, VideoItem

from conftest import image, login

YT = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


@pytest.mark.parametrize("url", [
    YT,
    "https://youtu.be/dQw4w9WgXcQ",
    "https://www.youtube.com/embed/dQw4w9WgXcQ",
])
def test_extract_youtube_id(url):
    assert videos.extract_youtube_id(url) == "dQw4w9WgXcQ"


def test_youtube_thumbnail():
    assert videos.youtube_thumbnail(YT) == "https://img.youtube.com/vi/dQw4w9WgXcQ/hqdefault.jpg"
    assert videos.youtube_thumbnail(YT, "maxres").endswith("/maxresdefault.jpg")
    assert videos.youtube_thumbnail("https://example.com/video") == ""


def test_gdrive_thumbnail():
    url = "https://drive.google.com/file/d/1AbC-xyz_9/view?usp=sharing"
    assert videos.extract_gdrive_id(url) == "1AbC-xyz_9"
    assert videos.gdrive_thumbnail(url) == "https://lh3.googleusercontent.com/d/1AbC-xyz_9=w400"
    assert videos.extract_gdrive_id("https://drive.google.com/open?id=XYZ123") == "XYZ123"


@pytest.mark.parametrize("url, platform", [
    (YT, "youtube"),
    ("https://www.tiktok.com/@school/video/1", "tiktok"),
    ("https://drive.google.com/file/d/abc/view", "gdrive"),
    ("https://fb.watch/abc/", "facebook"),
    ("https://vimeo.com/1", "other"),
])
def test_detect_platform(url, platform):
    assert videos.detect_platform(url) == platform


def test_sanitize_filename():
    assert videos.sanitize_filename("ภาพ ปก(1).png") == "_______1_.png"
    assert videos.sanitize_filename("cover 1.jpg") == "cover_1.jpg"


def test_create_video_with_auto_thumbnail(app, users):
    v = videos.create_video({"title": "กีฬาสี 2569", "category": "กีฬาสี", "video_url": YT,
                             "auto_thumbnail": True}, users["photo"])
    assert v.platform == "youtube"
    assert v.thumbnail_url.endswith("/hqdefault.jpg")
    assert v.created_by_name == "Photo"
    assert ActivityLog.query.filter_by(action="create").count() == 1


def test_create_video_requires_link_and_category(app, users):
    with pytest.raises(ValidationError):
        videos.create_video({"title": "x", "category": "กีฬาสี", "links": [{"url": " "}]}, users["photo"])
    with pytest.raises(ValidationError):
        videos.create_video({"title": "x", "video_url": YT}, users["photo"])
    assert VideoItem.query.count() == 0


def test_extra_links_are_kept(app, users):
    v = videos.create_video({"title": "พิธีไหว้ครู", "category": "วันสำคัญ", "links": [
        {"url": YT}, {"url": "https://www.tiktok.com/@school/video/2"}]}, users["photo"])
    assert v.video_url == YT
    assert v.video_links == [{"url": "https://www.tiktok.com/@school/video/2", "platform": "tiktok"}]


def test_update_replaces_uploaded_thumbnail(app, users):
    v = videos.create_video({"title": "A", "category": "กีฬาสี", "video_url": YT},
                            users["photo"], thumbnail=image("first cover.png"))
    old = v.thumbnail_url
    assert "/files/video_thumbnails/" in old and old.endswith("first_cover.png")

    videos.update_video(v.id, {"title": "B", "category": "กีฬาสี", "video_url": YT},
                        users["photo"], thumbnail=image("second.png"))

    assert v.title == "B"
    assert v.thumbnail_url != old
    assert ActivityLog.query.filter_by(action="update").count() == 1


def test_delete_video_logs(app, users):
    v = videos.create_video({"title": "ลบ", "category": "กีฬาสี", "video_url": YT}, users["photo"])
    videos.delete_video(v.id, users["photo"])
    assert db.session.get(VideoItem, v.id) is None
    assert ActivityLog.query.filter_by(action="delete", product_name="ลบ").count() == 1


def test_gallery_lists_only_published(app, client, users):
    videos.create_video({"title": "Public", "category": "กีฬาสี", "video_url": YT}, users["photo"])
    videos.create_video({"title": "Draft", "category": "งานภายใน", "video_url": YT,
                         "is_published": False}, users["photo"])

    body = client.get("/videos/").get_json()
    assert [v["title"] for v in body["videos"]] == ["Public"]
    assert "งานภายใน" in body["categories"]
    assert body["categories"][:4] == videos.DEFAULT_CATEGORIES

    assert client.get("/videos/?all=1").status_code in (401, 403)
    login(client, "photo")
    assert len(client.get("/videos/?all=1").get_json()["videos"]) == 2


def test_thumbnail_endpoint(app, client):
    body = client.get("/videos/thumbnail", query_string={"url": YT}).get_json()
    assert body == {"platform": "youtube",
                    "thumbnailUrl": "https://img.youtube.com/vi/dQw4w9WgXcQ/hqdefault.jpg"}
