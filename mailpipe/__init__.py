import atexit
import os

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from mailpipe.api import api_bp
from mailpipe.engine import EXTENSION_KEY, build_engine
from mailpipe.logging_config import configure_logging, get_logger
from mailpipe.models import db
from mailpipe.pipelines.registry import validate_registry
from mailpipe.scheduler import ScanScheduler
from mailpipe.seed import seed_predefined_templates

logger = get_logger(__name__)


def init_scheduler(app):
    """Start the recurring scans when this process is the designated scheduler."""

    # Only one process per deployment may run the scans
    if not app.config.get("SCHEDULER_ENABLED"):
        logger.info("Skipping scheduler startup on this worker")
        return None
    # The reloader parent process must not run a second copy
    if app.debug and os.environ.get("WERKZEUG_RUN_MAIN") not in (None, "true"):
        return None

    engine = app.extensions[EXTENSION_KEY]
    scheduler = ScanScheduler(app, engine)
    scheduler.register_default_tasks()
    scheduler.start()
    engine.scheduler = scheduler
    atexit.register(scheduler.shutdown)
    return scheduler


def create_app(config_class=None, transport=None, content_generator=None):
    """
    Application factory.

    Args:
        config_class: Config class to load; picked from FLASK_ENV/ENVIRONMENT when None
        transport: Email transport to use instead of the configured one
        content_generator: Content generator to use instead of the configured one
    """
    # Import config after dotenv is loaded
    from mailpipe.config import get_config
    from mailpipe.db_config import configure_database

    config_class = config_class or get_config()

    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_logging(log_level=app.config.get("LOG_LEVEL", "INFO"), log_file=app.config.get("LOG_FILE"))

    configure_database(app)

    logger.info(f"Starting application in {config_class.ENV} environment")
    logger.info(f"Database URI: {app.config.get('SQLALCHEMY_DATABASE_URI', 'Not set')[:50]}...")

    db.init_app(app)

    # A broken pipeline definition must stop startup, not surface on first run
    validate_registry()

    with app.app_context():
        db.create_all()
        seed_predefined_templates()

    app.extensions[EXTENSION_KEY] = build_engine(
        app.config, transport=transport, content_generator=content_generator
    )

    @app.route("/health")
    def health():
        engine = app.extensions[EXTENSION_KEY]
        return jsonify({
            "status": "ok",
            "environment": config_class.ENV,
            "scheduler_running": bool(engine.scheduler and engine.scheduler.running),
            "running_pipelines": engine.orchestrator.running_pipelines(),
        }), 200

    app.register_blueprint(api_bp, url_prefix="/api")

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Return JSON for anything raised outside the API blueprint."""
        status_code = e.code if isinstance(e, HTTPException) else 500
        if status_code >= 500:
            logger.error("Unhandled exception", error=str(e), exc_info=True)

        response = jsonify({
            "success": False,
            "error": str(e),
            "message": "An error occurred processing your request",
        })
        response.status_code = status_code
        return response

    try:
        init_scheduler(app)
    except Exception as e:
        logger.error("Failed to start scheduler", error=str(e), exc_info=True)

    return app
