"""Application factory and extension initialization for ProcureFlow."""
from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from flask import Flask
from flask_login import LoginManager
from flask_mail import Mail
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from flask_wtf import CSRFProtect

from config import config_by_name

# Global extension instances -------------------------------------------------

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
csrf = CSRFProtect()
mail = Mail()


def create_app(config_name: Optional[str] = None) -> Flask:
    """Flask application factory."""
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)

    config_name = config_name or os.getenv("FLASK_CONFIG", "development")
    config_class = config_by_name.get(config_name.lower())
    if config_class is None:
        raise ValueError(f"Unknown Flask configuration '{config_name}'")

    app.config.from_object(config_class)
    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Ensure instance folder exists for SQLite DBs
    os.makedirs(app.instance_path, exist_ok=True)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    mail.init_app(app)

    from procureflow.services.email_service import init_email_service
    init_email_service(mail)

    # Register blueprints
    from procureflow.workflows import workflows_bp
    from procureflow.admin import admin_bp

    app.register_blueprint(workflows_bp)
    app.register_blueprint(admin_bp)

    from procureflow.utils.helpers import register_error_handlers
    register_error_handlers(app)

    from procureflow.cli import register_commands
    register_commands(app)

    # Import all models to ensure they are registered with SQLAlchemy
    from procureflow.models import (  # noqa: F401
        ApprovalMatrixVersion, ApprovalOverride, ApprovalRole, ApprovalRule,
        ApprovalRuleApprover, ApprovalWorkflow, ApprovalWorkflowAction,
        AuditLog, Department, User, UserApprovalRole,
    )

    @login_manager.user_loader
    def load_user(user_id: str) -> Optional[User]:
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        from procureflow.utils.helpers import json_response
        return json_response({"error": "Authentication required."}, status=401)

    @app.shell_context_processor
    def shell_context():
        return {"db": db, "User": User, "ApprovalWorkflow": ApprovalWorkflow}

    return app
