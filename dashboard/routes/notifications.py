"""Staff notifications: unread alerts, live stream and critical results."""

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from common.channels import PushMessage
from encounter_src.errors import ValidationError

from .api import acting_user, check_api_key, json_body

notifications_bp = Blueprint("notifications", __name__)


def require_user() -> str:
    user_id = acting_user()
    if not user_id:
        raise ValidationError("X-User header is required", {"X-User": "Required"})
    return user_id


@notifications_bp.route("/notifications")
@check_api_key
def list_unread():
    user_id = require_user()
    limit = request.args.get("limit", current_app.config["ALERTS_PER_PAGE"], type=int)
    alerts = current_app.clinic.list_unread(user_id, limit=limit)
    return jsonify([alert.to_dict() for alert in alerts])


@notifications_bp.route("/notifications/read", methods=["POST"])
@check_api_key
def mark_read():
    user_id = require_user()
    data = json_body()
    alert_ids = data.get("ids")
    if alert_ids is not None and not isinstance(alert_ids, list):
        raise ValidationError("ids must be a list", {"ids": "Expected a list of alert IDs"})
    count = current_app.clinic.mark_read(user_id, alert_ids or None)
    return jsonify({"success": True, "marked_read": count})


@notifications_bp.route("/notifications/stream")
@check_api_key
def stream():
    """Server-Sent Events stream of the user's alerts.

    Sends a comment line every SSE_HEARTBEAT_SECONDS so proxies keep the
    connection open. Alerts missed while disconnected are in /notifications.
    """
    user_id = require_user()
    clinic = current_app.clinic
    heartbeat = current_app.config["SSE_HEARTBEAT_SECONDS"]
    unread = len(clinic.list_unread(user_id))
    subscription = clinic.subscribe(user_id)

    def generate():
        try:
            yield PushMessage("connected", {"user_id": user_id, "unread": unread}).to_sse()
            while not subscription.closed:
                message = subscription.get(timeout=heartbeat)
                if message is None:
                    yield ": heartbeat\n\n"
                else:
                    yield message.to_sse()
        finally:
            clinic.unsubscribe(subscription)

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@notifications_bp.route("/critical-results")
@check_api_key
def list_critical_results():
    results = current_app.clinic.list_critical_results(request.args.get("provider"))
    return jsonify([result.to_dict() for result in results])


@notifications_bp.route("/critical-results/<alert_id>/acknowledge", methods=["POST"])
@check_api_key
def acknowledge_critical_result(alert_id):
    user_id = require_user()
    result = current_app.clinic.acknowledge_critical_result(alert_id, user_id)
    return jsonify(result.to_dict())
