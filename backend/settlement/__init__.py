# backend/settlement/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None, collaborators=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .services.collaborators import EXTENSION_KEY, Collaborators
    from .services.encryption_service import ArchiveKeyConfig
    from .services.integrity_service import IntegrityService

    # Archive key is derived once here and read-only afterwards
    key_config = ArchiveKeyConfig.from_secret(
        app.config.get("ARCHIVE_ENCRYPTION_KEY") or app.config["SECRET_KEY"]
    )
    app.extensions[EXTENSION_KEY] = {
        "collaborators": (collaborators or Collaborators()).with_defaults(app.config),
        "integrity": IntegrityService(
            key_config,
            retention_years=app.config["ARCHIVE_RETENTION_YEARS"],
            ops_recipient=app.config.get("OPS_ALERT_RECIPIENT"),
        ),
    }

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
