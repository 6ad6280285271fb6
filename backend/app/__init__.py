"""Flask application factory and initialization."""
import logging

from flask import Flask, jsonify
from backend.app.config import Config
from backend.app.extensions import init_extensions
from backend.app import db

logger = logging.getLogger(__name__)


def create_app(config_class=Config):
    """Create and configure the Flask application.

    Args:
        config_class: Configuration class to use

    Returns:
        Flask: Configured Flask application instance
    """
    app = Flask(__name__)
    app.config.from_object(config_class)

    # Initialize Flask extensions, the database connection and the storage monitor
    init_extensions(app)

    if app.config.get('DB_CONNECT_ON_STARTUP', True):
        try:
            with app.app_context():
                db.ensure_indexes()
        except Exception:
            logger.warning('Could not ensure DB indexes at startup')

    @app.route('/api/health')
    def health_check():
        """Health check endpoint with database connectivity and storage status."""
        from clinic_backup.monitor import get_storage_status, is_storage_monitoring

        response = {
            "status": "ok",
            "service": "clinic-backup-api"
        }

        try:
            db_health = db.health_check()
            response["database"] = db_health
            if db_health.get("status") != "healthy":
                response["status"] = "degraded"
        except Exception as e:
            response["database"] = {
                "status": "unhealthy",
                "error": str(e)
            }
            response["status"] = "degraded"

        last_status = get_storage_status()
        response["storage"] = {
            "monitoring": is_storage_monitoring(),
            "last_status": last_status.to_dict() if last_status else None,
        }

        return jsonify(response)

    register_blueprints(app)

    # Add CORS headers for development
    @app.after_request
    def after_request(response):
        """Add CORS headers to all responses for development."""
        response.headers['Access-Control-Allow-Origin'] = '*'
        response.headers['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
        response.headers['Access-Control-Allow-Headers'] = 'Content-Type, Authorization'
        response.headers['Access-Control-Expose-Headers'] = 'Content-Disposition'
        return response

    return app


def register_blueprints(app):
    """Register Flask blueprints with the application.

    Args:
        app: Flask application instance
    """
    # Import API blueprints here to avoid circular imports
    from backend.app.blueprints.api.backups.routes import backups_bp

    app.register_blueprint(backups_bp, url_prefix='/api/backups')
