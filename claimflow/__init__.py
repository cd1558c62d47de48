"""Application factory and extension initialization for claimflow."""
from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Optional

from dotenv import load_dotenv
from flask import Flask
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

from claimflow.config import config_by_name

if TYPE_CHECKING:
    from claimflow.services.engine import WorkflowEngine

# Global extension instances -------------------------------------------------

db = SQLAlchemy()
migrate = Migrate()


def create_app(config_name: Optional[str] = None, engine: Optional["WorkflowEngine"] = None) -> Flask:
    """Flask application factory.

    ``engine`` overrides the Flowable REST adapter built from configuration,
    which is how tests plug in an in-process engine.
    """
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)

    config_name = config_name or os.getenv("FLASK_CONFIG", "development")
    config_class = config_by_name.get(config_name.lower())
    if config_class is None:
        raise ValueError(f"Unknown Flask configuration '{config_name}'")

    app.config.from_object(config_class)
    _configure_logging(app)

    # Ensure instance folder exists for SQLite DBs
    os.makedirs(app.instance_path, exist_ok=True)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Initialize the workflow engine adapter
    from claimflow.services.engine import init_engine
    init_engine(app, engine)

    # Register blueprints
    from claimflow.approvals import approvals_bp

    app.register_blueprint(approvals_bp)

    # Import all models to ensure they are registered with SQLAlchemy
    from claimflow.models import User, WorkflowInstance, WorkflowNode, WorkflowTemplate

    with app.app_context():
        db.create_all()

    @app.shell_context_processor
    def shell_context():
        return {
            "db": db,
            "User": User,
            "WorkflowInstance": WorkflowInstance,
            "WorkflowNode": WorkflowNode,
            "WorkflowTemplate": WorkflowTemplate,
        }

    return app


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("claimflow").setLevel(level)
