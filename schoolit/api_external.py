from datetime import timezone

from flask import Blueprint, jsonify, current_app
from flask_cors import cross_origin

from .models import PhotographyJob

bp = Blueprint("api_external", __name__)

PLACEHOLDER_COVER = "https://placehold.co/600x400?text=No+Image"
MAX_ITEMS = 6
CACHE_CONTROL = "s-maxage=60, stale-while-revalidate=300"


def published_activities(limit=MAX_ITEMS):
    """Últimos trabajos de fotografía completados y publicados en Facebook."""
    jobs = (PhotographyJob.query
            .filter(PhotographyJob.status == "completed",
                    PhotographyJob.facebook_permalink.isnot(None),
                    PhotographyJob.facebook_permalink != "")
            .order_by(PhotographyJob.end_time.desc())
            .limit(limit).all())
    return [{
        "id": j.id,
        "title": j.title,
        "coverImage": j.cover_image or PLACEHOLDER_COVER,
        "facebookLink": j.facebook_permalink,
        "date": j.end_time.replace(tzinfo=timezone.utc).isoformat() if j.end_time else None,
        "location": j.location or "",
        "description": j.facebook_caption or "",
    } for j in jobs]


# el preflight OPTIONS lo responde flask-cors con cuerpo vacío
@bp.route("/activities", methods=["GET"])
@cross_origin(origins="*", send_wildcard=True, methods=["GET", "OPTIONS"],
              allow_headers=["Content-Type", "Authorization"])
def activities():
    try:
        data = published_activities()
    except Exception as e:
        current_app.logger.exception("external activities failed")
        return jsonify({"success": False, "error": str(e)}), 500
    return jsonify({"success": True, "data": data}), 200, {"Cache-Control": CACHE_CONTROL}
