# Campus Portal Configuration

import os
from datetime import timedelta
from pathlib import Path

# Base directory
BASE_DIR = Path(__file__).parent.absolute()


class Config:
    """Base configuration class"""

    # Flask Configuration
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'campus-portal-secret-key-2025'

    # Database Configuration
    DATABASE_PATH = Path(os.environ.get('DATABASE_PATH') or BASE_DIR / 'database' / 'campus.db')
    DATABASE_TIMEOUT = 30.0
    SEED_DEFAULT_DATA = True

    # Export Configuration
    EXPORTS_FOLDER = BASE_DIR / 'exports'
    EXPORTS_MAX_RECORDS = 10000
    EXPORTS_RETENTION_DAYS = 30
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024  # 16MB max request size

    # Attendance code Configuration
    QR_CODE_TOKEN_BYTES = 12
    QR_CODE_DEFAULT_DURATION_MINUTES = 60
    QR_CODE_MAX_DURATION_MINUTES = 480
    QR_CODE_SIZE = 10
    QR_CODE_BORDER = 4

    # Session Configuration
    PERMANENT_SESSION_LIFETIME = timedelta(hours=8)
    SESSION_COOKIE_SECURE = False  # Set to True in production with HTTPS
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # Header set by the identity provider's proxy; None disables it
    TRUSTED_IDENTITY_HEADER = os.environ.get('TRUSTED_IDENTITY_HEADER')

    # Notification Configuration
    NOTIFICATIONS_RECENT_LIMIT = 100
    REALTIME_KEEPALIVE_SECONDS = 15

    # Logging Configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'
    LOG_FILE = BASE_DIR / 'logs' / 'campus_portal.log'
    LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
    LOG_BACKUP_COUNT = 5

    # Development Configuration
    DEBUG = os.environ.get('DEBUG', 'False').lower() in ['true', 'on', '1']
    TESTING = False

    @classmethod
    def init_app(cls, app):
        """Create the directories named in the application's configuration"""
        directories = [app.config['EXPORTS_FOLDER']]
        if str(app.config['DATABASE_PATH']) != ':memory:':
            directories.append(Path(app.config['DATABASE_PATH']).parent)

        for directory in directories:
            Path(directory).mkdir(parents=True, exist_ok=True)


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    TESTING = False

    DATABASE_PATH = BASE_DIR / 'database' / 'campus_dev.db'

    SESSION_COOKIE_SECURE = False

    # More verbose logging
    LOG_LEVEL = 'DEBUG'


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = True

    # Tests pass a temporary database path to create_app
    DATABASE_PATH = BASE_DIR / 'database' / 'campus_test.db'
    DATABASE_TIMEOUT = 5.0
    SEED_DEFAULT_DATA = False

    REALTIME_KEEPALIVE_SECONDS = 1


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False

    # Enhanced security for production
    SESSION_COOKIE_SECURE = True  # Requires HTTPS

    # Production database path
    DATABASE_PATH = Path(os.environ.get('DATABASE_PATH') or BASE_DIR / 'database' / 'campus_prod.db')

    # Production logging
    LOG_LEVEL = 'WARNING'

    @classmethod
    def init_app(cls, app):
        super().init_app(app)

        # Production-specific initialization
        import logging
        from logging.handlers import RotatingFileHandler

        # Setup file logging
        if not app.debug:
            cls.LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                cls.LOG_FILE,
                maxBytes=cls.LOG_MAX_BYTES,
                backupCount=cls.LOG_BACKUP_COUNT
            )
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
            ))
            file_handler.setLevel(logging.INFO)
            app.logger.addHandler(file_handler)

            app.logger.setLevel(logging.INFO)
            app.logger.info('Campus Portal startup')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


# Environment-specific configurations
def get_config(config_name=None):
    """Get configuration based on name or the FLASK_ENV environment variable"""
    return config.get(config_name or os.environ.get('FLASK_ENV', 'default'), DevelopmentConfig)


# Validation functions
def validate_config(settings):
    """Validate configuration settings"""
    errors = []

    if settings['QR_CODE_TOKEN_BYTES'] < 10:
        errors.append("QR_CODE_TOKEN_BYTES must be at least 10")

    if not 0 < settings['QR_CODE_DEFAULT_DURATION_MINUTES'] <= settings['QR_CODE_MAX_DURATION_MINUTES']:
        errors.append("QR_CODE_DEFAULT_DURATION_MINUTES must be between 1 and QR_CODE_MAX_DURATION_MINUTES")

    if settings['NOTIFICATIONS_RECENT_LIMIT'] <= 0:
        errors.append("NOTIFICATIONS_RECENT_LIMIT must be positive")

    if not settings['DEBUG'] and not settings['TESTING'] and settings['SECRET_KEY'] == Config.SECRET_KEY:
        errors.append("SECRET_KEY must be set in production")

    return errors


# Initialize configuration
def init_config(app, config_name=None, overrides=None):
    """Initialize application with configuration"""
    config_class = get_config(config_name)
    app.config.from_object(config_class)
    app.config.update(overrides or {})

    # Validate configuration
    errors = validate_config(app.config)
    if errors:
        for error in errors:
            app.logger.error(f"Configuration error: {error}")
        raise RuntimeError("Configuration validation failed")

    config_class.init_app(app)
    return config_class
