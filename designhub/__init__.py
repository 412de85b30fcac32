import atexit
import os

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, jsonify
from flask_cors import CORS

from designhub.logging_config import configure_logging, get_logger
from designhub.models import db

logger = get_logger(__name__)


def run_sync_sweep(app):
    """Scheduler entry point: one retry sweep inside an app context."""
    from designhub.trello.sweeper import process_failed_syncs

    with app.app_context():
        try:
            summary = process_failed_syncs(batch_size=app.config["SYNC_SWEEP_BATCH_SIZE"])
            logger.info(
                "Scheduled sync sweep finished",
                processed=summary["processed_count"],
                succeeded=summary["succeeded"],
                failed=summary["failed"],
            )
        except Exception as e:
            logger.error("Scheduled sync sweep failed", error=str(e), exc_info=True)
        finally:
            db.session.remove()


def init_scheduler(app):
    """Start the in-process retry sweeper when ENABLE_SYNC_SCHEDULER is set."""
    if not app.config.get("ENABLE_SYNC_SCHEDULER"):
        logger.info("Sync scheduler disabled; run designhub.scripts.process_failed_syncs externally")
        return None

    # --- Prevent scheduler duplication in multi-worker environments ---
    # Only run the scheduler on one instance
    if app.debug and os.environ.get("WERKZEUG_RUN_MAIN") != "true":
        logger.info("Skipping scheduler startup in reloader parent process")
        return None

    executors = {"default": ThreadPoolExecutor(1)}
    scheduler = BackgroundScheduler(executors=executors)

    scheduler.add_job(
        func=run_sync_sweep,
        args=[app],
        trigger="interval",
        minutes=app.config["SYNC_SWEEP_INTERVAL_MINUTES"],
        id="trello_sync_sweeper",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))

    logger.info("Scheduler started", interval_minutes=app.config["SYNC_SWEEP_INTERVAL_MINUTES"])
    return scheduler


def create_app(config_overrides=None):
    # Import config after dotenv is loaded
    from designhub.config import get_config
    from designhub.db_config import configure_database
    from designhub.api import api_bp

    config_class = get_config()

    app = Flask(__name__)
    app.config.from_object(config_class)
    if config_overrides:
        app.config.update(config_overrides)

    configure_logging(log_level=app.config["LOG_LEVEL"], log_file=app.config.get("LOG_FILE"))

    # Configure database separately
    configure_database(app, overrides=config_overrides)

    logger.info("Starting application", environment=app.config.get("ENV"))

    # Get allowed origins from environment variable
    allowed_origins = app.config.get("CORS_ORIGINS", "*")
    if allowed_origins != "*":
        # Parse comma-separated list if provided
        allowed_origins = [origin.strip() for origin in allowed_origins.split(",")]

    CORS(app,
         resources={r"/api/*": {"origins": allowed_origins}},
         supports_credentials=True,
         allow_headers=["Content-Type", "Authorization"],
         methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"])

    db.init_app(app)
    app.register_blueprint(api_bp, url_prefix="/api")

    # Only create tables locally and under test; other environments are migrated
    if app.config.get("ENV") in ("local", "testing"):
        with app.app_context():
            db.create_all()

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "environment": app.config.get("ENV")}), 200

    if not app.config.get("TESTING"):
        app.scheduler = init_scheduler(app)

    return app
