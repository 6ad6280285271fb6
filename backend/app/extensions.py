"""Flask extensions initialization (JWT, Limiter) and backup service wiring."""
from pathlib import Path

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_jwt_extended import JWTManager

from . import db
from clinic_backup.connection import get_connection_manager
from clinic_backup.runner import BackupRunner

# Initialize Flask extensions
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["200 per day", "50 per hour"],
    headers_enabled=True,
)
jwt = JWTManager()


def init_backup_runner(app) -> BackupRunner:
    """Create the backup runner and history repository for this app."""
    from backend.app.repositories import BackupHistoryRepository

    database_provider = get_connection_manager().get_database
    history = BackupHistoryRepository(database_provider)
    runner = BackupRunner(
        database_provider=database_provider,
        backup_root=Path(app.config['BACKUP_ROOT']),
        temp_root=Path(app.config['BACKUP_TEMP_ROOT']),
        retention_count=app.config['BACKUP_RETENTION_COUNT'],
        compresslevel=app.config['BACKUP_COMPRESSION_LEVEL'],
        history_repository=history,
        lifecycle_rules=app.config.get('DATA_LIFECYCLE_RULES') or {},
    )
    app.extensions['backup_history'] = history
    app.extensions['backup_runner'] = runner
    return runner


def init_extensions(app):
    """Initialize Flask extensions with app context.

    Args:
        app: Flask application instance
    """
    limiter.init_app(app)
    jwt.init_app(app)

    @jwt.invalid_token_loader
    def invalid_token_callback(reason):
        from flask import jsonify
        return jsonify({"error": "invalid token", "message": reason}), 401

    @jwt.unauthorized_loader
    def missing_token_callback(reason):
        from flask import jsonify
        return jsonify({"error": "authorization required", "message": reason}), 401

    runner = init_backup_runner(app)
    app.logger.info(
        "Backup runner ready (root=%s, retention=%d archives)",
        runner.backup_root,
        runner.retention_count,
    )

    # Configure the shared connection and storage monitor
    db.init_app(app)
