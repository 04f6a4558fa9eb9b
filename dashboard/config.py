"""Dashboard configuration."""

import os


class Config:
    """Base configuration."""

    # Flask
    SECRET_KEY = os.environ.get("FLASK_SECRET_KEY", "dev-secret-change-in-production")
    DEBUG = os.environ.get("FLASK_DEBUG", "false").lower() == "true"

    # Dashboard
    DASHBOARD_API_KEY = os.environ.get("DASHBOARD_API_KEY", "")

    # Clinic store (alerts share the same file)
    CLINIC_DB_PATH = os.environ.get(
        "CLINIC_DB_PATH",
        os.path.expanduser("~/.aegis/clinic.db")
    )

    # Live notifications
    SSE_HEARTBEAT_SECONDS = int(os.environ.get("SSE_HEARTBEAT_SECONDS", "15"))
    PUSH_QUEUE_SIZE = int(os.environ.get("PUSH_QUEUE_SIZE", "100"))

    # Pagination
    ALERTS_PER_PAGE = int(os.environ.get("ALERTS_PER_PAGE", "50"))


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False


def get_config():
    """Get configuration based on environment."""
    env = os.environ.get("FLASK_ENV", "development")
    if env == "production":
        return ProductionConfig()
    return DevelopmentConfig()
