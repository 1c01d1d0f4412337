"""Public progress tracking for a single report."""
from flask import Blueprint

from routes.common import ok
from utils.lifecycle import track_report

track_bp = Blueprint("track", __name__, url_prefix="/api/track")


@track_bp.route("/<report_id>", methods=["GET"])
def track(report_id):
    return ok(track_report(report_id))
