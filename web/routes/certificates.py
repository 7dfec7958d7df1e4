"""Routes describing the certificate currently served."""

from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify

bp = Blueprint("certificates", __name__)


@bp.route("/certificate")
def current_certificate():
    source = current_app.config.get("CERT_SOURCE")
    if source is None:
        return jsonify({"error": "No certificate source configured"}), 503

    loaded = source.get_certificate()
    if loaded is None:
        return jsonify({"error": "No certificate loaded"}), 503

    data = loaded.summary()
    remaining = loaded.not_after - datetime.now(timezone.utc)
    data["days_remaining"] = remaining.days
    data["source"] = type(source).__name__
    return jsonify(data), 200
