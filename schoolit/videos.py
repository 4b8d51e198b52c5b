import re

from flask import Blueprint, request, jsonify
from flask_login import login_required

from . import db
from .activity import log_activity
from .auth import require_role, current_actor
from .errors import ValidationError, NotFound
from .models import VideoItem
from .storage import put_bytes, allowed_image, delete_blob, timestamp_ms
from .time_helpers import parse_date

bp = Blueprint("videos", __name__)

DEFAULT_CATEGORIES = ["กีฬาสี", "วันสำคัญ", "ประชาสัมพันธ์", "กิจกรรมอื่นๆ"]
PLATFORMS = ("youtube", "tiktok", "gdrive", "facebook", "other")

YOUTUBE_RE = re.compile(r"^.*((youtu.be\/)|(v\/)|(\/u\/\w\/)|(embed\/)|(watch\?))\??v?=?([^#&?]*).*")
GDRIVE_RES = (
    re.compile(r"/d/([a-zA-Z0-9_-]+)"),
    re.compile(r"[?&]id=([a-zA-Z0-9_-]+)"),
    re.compile(r"/file/d/([a-zA-Z0-9_-]+)"),
)
YOUTUBE_QUALITY = {"default": "default", "mq": "mqdefault", "hq": "hqdefault",
                   "sd": "sddefault", "maxres": "maxresdefault"}


# --------- helpers de URL ---------
def extract_youtube_id(url):
    m = YOUTUBE_RE.match(url or "")
    if m and len(m.group(7)) == 11:
        return m.group(7)
    return None


def youtube_thumbnail(url, quality="hq"):
    video_id = extract_youtube_id(url)
    if not video_id:
        return ""
    return f"https://img.youtube.com/vi/{video_id}/{YOUTUBE_QUALITY[quality]}.jpg"


def extract_gdrive_id(url):
    for rx in GDRIVE_RES:
        m = rx.search(url or "")
        if m:
            return m.group(1)
    return None


def gdrive_thumbnail(url):
    file_id = extract_gdrive_id(url)
    # solo funciona con archivos compartidos públicamente
    return f"https://lh3.googleusercontent.com/d/{file_id}=w400" if file_id else ""


def detect_platform(url):
    url = url or ""
    if "youtube.com" in url or "youtu.be" in url:
        return "youtube"
    if "tiktok.com" in url:
        return "tiktok"
    if "drive.google.com" in url:
        return "gdrive"
    if "facebook.com" in url or "fb.watch" in url:
        return "facebook"
    return "other"


def auto_thumbnail(url):
    platform = detect_platform(url)
    if platform == "youtube":
        return youtube_thumbnail(url)
    if platform == "gdrive":
        return gdrive_thumbnail(url)
    return ""


def sanitize_filename(name):
    return re.sub(r"[^a-zA-Z0-9.]", "_", name or "")


def put_thumbnail(storage_file):
    if not allowed_image(storage_file.filename or ""):
        raise ValidationError("กรุณาเลือกไฟล์รูปภาพ")
    path = f"video_thumbnails/{timestamp_ms()}_{sanitize_filename(storage_file.filename)}"
    return put_bytes(path, storage_file.read())


# --------- servicio ---------
def list_videos(category=None, published_only=True, limit=50):
    q = VideoItem.query
    if published_only:
        q = q.filter(VideoItem.is_published.is_(True))
    if category and category != "all":
        q = q.filter(VideoItem.category == category)
    return q.order_by(VideoItem.created_at.desc()).limit(limit).all()


def categories():
    used = [c for (c,) in db.session.query(VideoItem.category).distinct() if c]
    return list(dict.fromkeys(DEFAULT_CATEGORIES + sorted(used)))


def _links(data):
    links = data.get("links")
    if not links:
        links = [{"url": data.get("video_url")}]
    valid = []
    for link in links:
        url = (link.get("url") or "").strip()
        if url:
            platform = link.get("platform") if link.get("platform") in PLATFORMS else detect_platform(url)
            valid.append({"url": url, "platform": platform})
    if not valid:
        raise ValidationError("กรุณากรอก URL วีดีโอ อย่างน้อย 1 ลิงก์")
    return valid


def _apply(video, data, thumbnail=None):
    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("กรุณากรอกชื่อวีดีโอ")
    category = (data.get("category") or "").strip()
    if not category:
        raise ValidationError("กรุณาเลือกหรือกรอกหมวดหมู่")
    links = _links(data)

    old_thumb = video.thumbnail_url
    thumb = (data.get("thumbnail_url") or "").strip()
    if thumbnail is not None and getattr(thumbnail, "filename", ""):
        thumb = put_thumbnail(thumbnail)
    elif not thumb and data.get("auto_thumbnail"):
        thumb = auto_thumbnail(links[0]["url"])

    video.title = title
    video.description = (data.get("description") or "").strip()
    video.video_url = links[0]["url"]
    video.platform = links[0]["platform"]
    video.video_links = links[1:]
    video.thumbnail_url = thumb
    video.category = category
    published = data.get("is_published", True)
    video.is_published = published if isinstance(published, bool) else str(published).lower() in ("1", "true", "on")
    video.event_date = parse_date(data.get("event_date"))
    return old_thumb


def create_video(data, user, thumbnail=None):
    video = VideoItem(created_by=user.id, created_by_name=user.name)
    _apply(video, data, thumbnail)
    db.session.add(video)
    log_activity("create", video.title, user.name, details=f"วีดีโอ: {video.category}",
                 image_url=video.thumbnail_url)
    db.session.commit()
    return video


def update_video(video_id, data, user, thumbnail=None):
    video = get_video(video_id)
    old_thumb = _apply(video, data, thumbnail)
    log_activity("update", video.title, user.name, details=f"วีดีโอ: {video.category}")
    db.session.commit()
    if old_thumb and old_thumb != video.thumbnail_url:
        delete_blob(old_thumb)
    return video


def delete_video(video_id, user):
    video = get_video(video_id)
    thumb = video.thumbnail_url
    log_activity("delete", video.title, user.name, details=f"วีดีโอ: {video.category}")
    db.session.delete(video)
    db.session.commit()
    if thumb:
        delete_blob(thumb)


def get_video(video_id):
    video = db.session.get(VideoItem, video_id)
    if video is None:
        raise NotFound("ไม่พบวีดีโอ")
    return video


# --------- RUTAS ---------
def _payload():
    return request.get_json(silent=True) or request.form.to_dict()


@bp.route("/", strict_slashes=False)
def gallery():
    try:
        limit = max(1, min(int(request.args.get("limit", 50)), 200))
    except ValueError:
        limit = 50
    published_only = request.args.get("all") not in ("1", "true")
    if not published_only:
        require_role("photographer")
    videos = list_videos(request.args.get("category"), published_only, limit)
    return jsonify({"videos": [v.to_dict() for v in videos], "categories": categories()})


@bp.route("/<int:video_id>")
def view_video(video_id):
    video = get_video(video_id)
    if not video.is_published:
        require_role("photographer")
    return jsonify(video.to_dict())


@bp.route("/new", methods=["POST"])
@login_required
def new_video():
    require_role("photographer")
    video = create_video(_payload(), current_actor(), request.files.get("thumbnail"))
    return jsonify(video.to_dict()), 201


@bp.route("/<int:video_id>/edit", methods=["POST"])
@login_required
def edit_video(video_id):
    require_role("photographer")
    video = update_video(video_id, _payload(), current_actor(), request.files.get("thumbnail"))
    return jsonify(video.to_dict())


@bp.route("/<int:video_id>/delete", methods=["POST"])
@login_required
def remove_video(video_id):
    require_role("photographer")
    delete_video(video_id, current_actor())
    return jsonify({"ok": True})


@bp.route("/thumbnail", methods=["GET"])
def thumbnail_for():
    url = request.args.get("url", "")
    return jsonify({"platform": detect_platform(url), "thumbnailUrl": auto_thumbnail(url)})
