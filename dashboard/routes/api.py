"""JSON API for encounter, routing, order and billing operations."""

from enum import Enum
from functools import wraps

from flask import Blueprint, jsonify, request, current_app

from encounter_src.errors import (
    ClinicError,
    ConflictError,
    DependencyError,
    NotFoundError,
    ValidationError,
)
from encounter_src.models import (
    Department,
    EncounterType,
    OrderStatus,
    Priority,
    ResourceKind,
    RoutingEntryStatus,
)

api_bp = Blueprint("api", __name__)


def check_api_key(f):
    """Decorator to check API key for protected endpoints."""
    @wraps(f)
    def decorated(*args, **kwargs):
        api_key = current_app.config.get("DASHBOARD_API_KEY")

        # If no API key configured, allow all requests (dev mode)
        if not api_key:
            return f(*args, **kwargs)

        # Check key from query param or header
        provided_key = request.args.get("key") or request.headers.get("X-API-Key")

        if provided_key != api_key:
            return jsonify({"error": "Invalid or missing API key"}), 401

        return f(*args, **kwargs)

    return decorated


def register_error_handlers(app):
    """Map engine errors to JSON responses with their context fields."""

    def handle(error: ClinicError, status: int):
        return jsonify(error.to_dict()), status

    app.register_error_handler(ValidationError, lambda e: handle(e, 400))
    app.register_error_handler(NotFoundError, lambda e: handle(e, 404))
    app.register_error_handler(ConflictError, lambda e: handle(e, 409))
    app.register_error_handler(DependencyError, lambda e: handle(e, 503))


def acting_user() -> str | None:
    """The staff member making the request."""
    return request.headers.get("X-User") or request.args.get("user")


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", {"body": "Expected an object"})
    return data


def parse_enum(enum_cls: type[Enum], value, field: str, default=None):
    if value is None or value == "":
        if default is not None:
            return default
        raise ValidationError(f"{field} is required", {field: "Required"})
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(
            f"Invalid {field}: {value}", {field: f"Must be one of: {allowed}"}
        ) from None


def require(data: dict, field: str):
    value = data.get(field)
    if value is None or value == "":
        raise ValidationError(f"{field} is required", {field: "Required"})
    return value


# =============================================================================
# Encounters
# =============================================================================

@api_bp.route("/health")
def health():
    counts = current_app.clinic.dispatcher.counts()
    return jsonify({"status": "ok", "outbox": counts})


@api_bp.route("/encounters", methods=["POST"])
@check_api_key
def check_in():
    data = json_body()
    encounter = current_app.clinic.check_in(
        require(data, "patient_id"),
        chief_complaint=data.get("chief_complaint"),
        clinic=data.get("clinic"),
        encounter_type=parse_enum(
            EncounterType, data.get("encounter_type"), "encounter_type",
            default=EncounterType.WALK_IN,
        ),
        receptionist_id=acting_user(),
    )
    return jsonify(encounter.to_dict()), 201


@api_bp.route("/encounters/<encounter_id>")
@check_api_key
def get_encounter(encounter_id):
    return jsonify(current_app.clinic.get_encounter(encounter_id).to_dict())


@api_bp.route("/encounters/<encounter_id>/resource", methods=["POST"])
@check_api_key
def assign_resource(encounter_id):
    data = json_body()
    encounter = current_app.clinic.assign_resource(
        encounter_id, require(data, "resource_id"), assigned_by=acting_user()
    )
    return jsonify(encounter.to_dict())


@api_bp.route("/encounters/<encounter_id>/resource", methods=["DELETE"])
@check_api_key
def release_resource(encounter_id):
    encounter = current_app.clinic.release_resource(encounter_id, actor=acting_user())
    return jsonify(encounter.to_dict())


@api_bp.route("/encounters/<encounter_id>/vitals", methods=["POST"])
@check_api_key
def record_vitals(encounter_id):
    result = current_app.clinic.record_vitals(
        encounter_id, json_body(), recorded_by=acting_user()
    )
    return jsonify(result), 201


@api_bp.route("/encounters/<encounter_id>/vitals")
@check_api_key
def vitals_history(encounter_id):
    records = current_app.clinic.vitals_history(encounter_id)
    return jsonify([record.to_dict() for record in records])


@api_bp.route("/encounters/<encounter_id>/nurse", methods=["POST"])
@check_api_key
def assign_nurse(encounter_id):
    data = json_body()
    encounter = current_app.clinic.assign_nurse(
        encounter_id, require(data, "nurse_id"), actor=acting_user()
    )
    return jsonify(encounter.to_dict())


@api_bp.route("/encounters/<encounter_id>/nurse/start", methods=["POST"])
@check_api_key
def start_nurse_work(encounter_id):
    encounter = current_app.clinic.start_nurse_work(encounter_id, nurse_id=acting_user())
    return jsonify(encounter.to_dict())


@api_bp.route("/encounters/<encounter_id>/alert-physician", methods=["POST"])
@check_api_key
def alert_physician(encounter_id):
    data = json_body()
    encounter = current_app.clinic.alert_physician(
        encounter_id, nurse_id=acting_user(), message=data.get("message")
    )
    return jsonify(encounter.to_dict())


@api_bp.route("/encounters/<encounter_id>/physician/start", methods=["POST"])
@check_api_key
def start_physician_work(encounter_id):
    encounter = current_app.clinic.start_physician_work(
        encounter_id, physician_id=acting_user()
    )
    return jsonify(encounter.to_dict())


@api_bp.route("/encounters/<encounter_id>/physician/complete", methods=["POST"])
@check_api_key
def complete_physician_work(encounter_id):
    encounter = current_app.clinic.complete_physician_work(
        encounter_id, physician_id=acting_user()
    )
    return jsonify(encounter.to_dict())


@api_bp.route("/encounters/<encounter_id>/finish", methods=["POST"])
@check_api_key
def finish_and_release(encounter_id):
    data = json_body()
    result = current_app.clinic.finish_and_release(
        encounter_id,
        release_only=bool(data.get("release_only", False)),
        actor=acting_user(),
    )
    return jsonify({
        "encounter": result["encounter"].to_dict(),
        "invoice": result["invoice"].to_dict() if result["invoice"] else None,
    })


@api_bp.route("/encounters/<encounter_id>/checkout", methods=["POST"])
@check_api_key
def checkout(encounter_id):
    encounter = current_app.clinic.checkout(encounter_id, receptionist_id=acting_user())
    return jsonify(encounter.to_dict())


@api_bp.route("/encounters/<encounter_id>/cancel", methods=["POST"])
@check_api_key
def cancel_encounter(encounter_id):
    data = json_body()
    encounter = current_app.clinic.cancel_encounter(
        encounter_id, reason=data.get("reason"), actor=acting_user()
    )
    return jsonify(encounter.to_dict())


@api_bp.route("/patient-queue")
@check_api_key
def patient_queue():
    include_finished = request.args.get("include_finished", "false").lower() == "true"
    queue = current_app.clinic.get_patient_queue(
        clinic=request.args.get("clinic"),
        include_finished=include_finished,
    )
    return jsonify(queue)


# =============================================================================
# Rooms and beds
# =============================================================================

@api_bp.route("/resources")
@check_api_key
def list_resources():
    kind = request.args.get("kind")
    resources = current_app.clinic.list_resources(
        kind=parse_enum(ResourceKind, kind, "kind") if kind else None,
        available_only=request.args.get("available", "false").lower() == "true",
    )
    return jsonify([resource.to_dict() for resource in resources])


@api_bp.route("/resources", methods=["POST"])
@check_api_key
def add_resource():
    data = json_body()
    resource = current_app.clinic.add_resource(
        parse_enum(ResourceKind, data.get("kind"), "kind"),
        require(data, "label"),
        notes=data.get("notes"),
    )
    return jsonify(resource.to_dict()), 201


# =============================================================================
# Department routing
# =============================================================================

@api_bp.route("/encounters/<encounter_id>/routing", methods=["POST"])
@check_api_key
def route(encounter_id):
    data = json_body()
    entry = current_app.clinic.route(
        encounter_id,
        parse_enum(Department, data.get("department"), "department"),
        priority=parse_enum(Priority, data.get("priority"), "priority", default=Priority.ROUTINE),
        notes=data.get("notes"),
        routed_by=acting_user(),
    )
    return jsonify(entry.to_dict()), 201


@api_bp.route("/encounters/<encounter_id>/routing")
@check_api_key
def routing_history(encounter_id):
    entries = current_app.clinic.routing_history(encounter_id)
    return jsonify([entry.to_dict() for entry in entries])


@api_bp.route("/routing/<entry_id>", methods=["PATCH"])
@check_api_key
def advance_routing_status(entry_id):
    data = json_body()
    entry = current_app.clinic.advance_routing_status(
        entry_id,
        parse_enum(RoutingEntryStatus, data.get("status"), "status"),
        actor=acting_user(),
    )
    return jsonify(entry.to_dict())


@api_bp.route("/routing/<entry_id>/cancel", methods=["POST"])
@check_api_key
def cancel_routing(entry_id):
    data = json_body()
    entry = current_app.clinic.cancel_routing(
        entry_id, reason=data.get("reason"), actor=acting_user()
    )
    return jsonify(entry.to_dict())


@api_bp.route("/queues/<department>")
@check_api_key
def department_queue(department):
    statuses = [
        parse_enum(RoutingEntryStatus, value, "status")
        for value in request.args.getlist("status")
    ]
    queue = current_app.clinic.list_queue(
        parse_enum(Department, department, "department"),
        statuses or None,
    )
    return jsonify(queue)


# =============================================================================
# Orders and results
# =============================================================================

@api_bp.route("/encounters/<encounter_id>/orders", methods=["POST"])
@check_api_key
def place_order(encounter_id):
    data = json_body()
    quantity = data.get("quantity", 1)
    order = current_app.clinic.place_order(
        encounter_id,
        parse_enum(Department, data.get("department"), "department"),
        require(data, "item_name"),
        item_code=data.get("item_code"),
        quantity=quantity,
        priority=parse_enum(Priority, data.get("priority"), "priority", default=Priority.ROUTINE),
        ordering_provider_id=data.get("ordering_provider_id") or acting_user(),
    )
    return jsonify(order.to_dict()), 201


@api_bp.route("/encounters/<encounter_id>/orders")
@check_api_key
def list_orders(encounter_id):
    department = request.args.get("department")
    orders = current_app.clinic.list_orders(
        encounter_id,
        parse_enum(Department, department, "department") if department else None,
    )
    return jsonify([order.to_dict() for order in orders])


@api_bp.route("/orders/<order_id>", methods=["PATCH"])
@check_api_key
def update_order_status(order_id):
    data = json_body()
    order = current_app.clinic.update_order_status(
        order_id,
        parse_enum(OrderStatus, data.get("status"), "status"),
        actor=acting_user(),
    )
    return jsonify(order.to_dict())


@api_bp.route("/orders/<order_id>/results", methods=["POST"])
@check_api_key
def record_lab_result(order_id):
    data = json_body()
    results = data.get("results")
    if not isinstance(results, dict):
        raise ValidationError("results must be an object", {"results": "Expected analyte: value"})
    return jsonify(current_app.clinic.record_lab_result(
        order_id, results, recorded_by=acting_user()
    )), 201


# =============================================================================
# Billing
# =============================================================================

@api_bp.route("/encounters/<encounter_id>/invoice", methods=["POST"])
@check_api_key
def generate_invoice(encounter_id):
    invoice = current_app.clinic.generate_invoice(encounter_id, actor=acting_user())
    return jsonify(invoice.to_dict())


@api_bp.route("/encounters/<encounter_id>/invoice")
@check_api_key
def get_invoice(encounter_id):
    return jsonify(current_app.clinic.get_invoice(encounter_id).to_dict())


@api_bp.route("/outbox/drain", methods=["POST"])
@check_api_key
def drain_outbox():
    return jsonify(current_app.clinic.drain_outbox())
