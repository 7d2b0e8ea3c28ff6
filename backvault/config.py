import os


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Base configuration"""

    SECRET_KEY = os.environ.get('SECRET_KEY')

    # Registry database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/backvault.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Database dumped by the 'database' domain (defaults to the registry database)
    SOURCE_DATABASE_URL = os.environ.get('SOURCE_DATABASE_URL')
    PG_DUMP_PATH = os.environ.get('PG_DUMP_PATH') or 'pg_dump'

    # Domain roots and working directories
    ACTIVE_ASSETS_DIR = os.environ.get('ACTIVE_ASSETS_DIR') or '/data/assets'
    ARCHIVES_DIR = os.environ.get('ARCHIVES_DIR') or '/data/archives'
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Fernet key for backend secrets stored in the registry
    CREDENTIALS_KEY = os.environ.get('CREDENTIALS_KEY')

    # Engine defaults for targets that leave a field empty
    BACKUP_CONCURRENCY = _env_int('BACKUP_CONCURRENCY', 4)
    MULTIPART_THRESHOLD_BYTES = _env_int('MULTIPART_THRESHOLD_BYTES', 100 * 1024 * 1024)
    CHUNK_SIZE_BYTES = _env_int('CHUNK_SIZE_BYTES', 10 * 1024 * 1024)
    MAX_PARALLEL_CHUNKS = _env_int('MAX_PARALLEL_CHUNKS', 4)
    RETRY_MAX_ATTEMPTS = _env_int('RETRY_MAX_ATTEMPTS', 3)
    RETRY_BASE_DELAY_MS = _env_int('RETRY_BASE_DELAY_MS', 1000)
    RETRY_MAX_DELAY_MS = _env_int('RETRY_MAX_DELAY_MS', 30000)

    # Scheduler
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', True)
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "backvault.db")}'
    ACTIVE_ASSETS_DIR = os.path.join(DATA_DIR, 'assets')
    ARCHIVES_DIR = os.path.join(DATA_DIR, 'archives')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SCHEDULER_ENABLED = False
    RETRY_BASE_DELAY_MS = 1
    RETRY_MAX_DELAY_MS = 5


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
