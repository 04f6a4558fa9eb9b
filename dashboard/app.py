"""Flask application factory for the clinic dashboard API."""

import os

from flask import Flask

from .config import get_config


def create_app(config=None):
    """Create and configure the Flask application.

    Args:
        config: Optional configuration object or dict

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)

    # Load configuration
    if config is None:
        config = get_config()

    if isinstance(config, dict):
        app.config.update(config)
    else:
        app.config.from_object(config)

    app.config.setdefault("SSE_HEARTBEAT_SECONDS", 15)
    app.config.setdefault("PUSH_QUEUE_SIZE", 100)
    app.config.setdefault("ALERTS_PER_PAGE", 50)

    # One engine per app; its push channel holds the live connections
    from common.channels import LivePushChannel
    from encounter_src.service import ClinicService
    app.clinic = ClinicService(
        db_path=app.config.get("CLINIC_DB_PATH"),
        push=LivePushChannel(queue_size=app.config["PUSH_QUEUE_SIZE"]),
    )

    # Register blueprints
    from .routes.api import api_bp, register_error_handlers
    from .routes.notifications import notifications_bp

    app.register_blueprint(api_bp, url_prefix="/api")
    app.register_blueprint(notifications_bp, url_prefix="/api")
    register_error_handlers(app)

    return app


def run_dev_server():
    """Run development server."""
    app = create_app()
    app.run(
        host="0.0.0.0",
        port=int(os.environ.get("PORT", 5000)),
        debug=True,
        threaded=True,
    )


if __name__ == "__main__":
    run_dev_server()
