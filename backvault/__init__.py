import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'backvault.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, config_overrides=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from backvault.config import config
    app.config.from_object(config[config_name])
    if config_overrides:
        app.config.update(config_overrides)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    db_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if db_uri.startswith('sqlite:///') and ':memory:' not in db_uri:
        os.makedirs(os.path.dirname(db_uri.replace('sqlite:///', '')) or '.', exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Credential cipher for backend secrets
    from backvault.utils.crypto import credential_cipher
    if app.config.get('CREDENTIALS_KEY'):
        credential_cipher.initialize(app.config['CREDENTIALS_KEY'])
    else:
        app.logger.warning("CREDENTIALS_KEY not set - targets with secret parameters cannot be saved")

    # Register blueprints
    from backvault.routes import register_error_handlers, runs_routes, targets_routes
    app.register_blueprint(targets_routes.bp)
    app.register_blueprint(runs_routes.bp)
    register_error_handlers(app)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Create schema and run the startup reconciliation sweep
    from backvault import models
    from backvault.backup.registry import RunRegistry

    with app.app_context():
        db.create_all()

    if not app.config.get('SCHEDULER_ENABLED', False):
        app.logger.info("Scheduler disabled in this process")
        return app

    # Reconciliation belongs to the scheduler process only
    from backvault.scheduler import init_scheduler, start_scheduler, sync_backup_targets, stop_scheduler
    import atexit

    with app.app_context():
        aborted = RunRegistry().reconcile()
        if aborted:
            app.logger.warning(f"Marked {aborted} interrupted runs as aborted")

    app.logger.info("Initializing scheduler in this process...")
    init_scheduler(app)
    start_scheduler()

    with app.app_context():
        sync_backup_targets(clear_queued_runs=True)

    # Register cleanup function to stop scheduler on app shutdown
    atexit.register(stop_scheduler)
    app.logger.info("Scheduler initialized and started successfully")

    return app
