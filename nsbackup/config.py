import os
import tempfile

from nsbackup.backup.sources import get_database_name_from_uri


def _env_bool(name: str, default: str = 'false') -> bool:
    return os.environ.get(name, default).lower() == 'true'


def _env_list(name: str) -> list:
    return [v.strip() for v in os.environ.get(name, '').split(',') if v.strip()]


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'nsbackup-dev-secret'

    # MongoDB
    MONGODB_URI = os.environ.get('MONGODB_URI') or 'mongodb://localhost:27017/nightscout'
    MONGODB_DATABASE = os.environ.get('MONGODB_DATABASE') or get_database_name_from_uri(MONGODB_URI) or 'nightscout'
    BACKUP_EXCLUDE_COLLECTIONS = _env_list('BACKUP_EXCLUDE_COLLECTIONS')

    # S3 (credentials fall back to the boto3 credential chain when unset)
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')
    AWS_REGION = os.environ.get('AWS_REGION') or 'us-east-1'
    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_PREFIX = os.environ.get('S3_PREFIX') or 'backups'
    S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL')
    S3_PRESIGN_EXPIRES = int(os.environ.get('S3_PRESIGN_EXPIRES', 7 * 24 * 3600))  # 0 = s3:// URI

    # Backup engine
    ARCHIVE_FORMAT = os.environ.get('ARCHIVE_FORMAT') or 'tar.gz'
    BATCH_SIZE = int(os.environ.get('BATCH_SIZE', 500))
    EXPORT_WORKERS = int(os.environ.get('EXPORT_WORKERS', 3))
    COLLECTION_RETRIES = int(os.environ.get('COLLECTION_RETRIES', 2))
    COLLECTION_RETRY_DELAY_SECONDS = float(os.environ.get('COLLECTION_RETRY_DELAY_SECONDS', 1.0))
    UPLOAD_RETRIES = int(os.environ.get('UPLOAD_RETRIES', 3))
    UPLOAD_BACKOFF_SECONDS = float(os.environ.get('UPLOAD_BACKOFF_SECONDS', 1.0))
    RUN_TIMEOUT_SECONDS = float(os.environ.get('RUN_TIMEOUT_SECONDS', 3600))
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'

    # Scheduler
    BACKUP_SCHEDULE_CRON = os.environ.get('BACKUP_SCHEDULE_CRON', '0 3 * * *')  # empty = disabled
    SCHEDULED_CREATE_THREAD = _env_bool('SCHEDULED_CREATE_THREAD', 'true')
    SCHEDULER_TIMEZONE = 'UTC'

    # Preconditions
    BACKUP_API_TOKEN = os.environ.get('BACKUP_API_TOKEN')
    BACKUP_CHANNEL_IDS = _env_list('BACKUP_CHANNEL_IDS')
    BACKUP_COOLDOWN_SECONDS = int(os.environ.get('BACKUP_COOLDOWN_SECONDS', 300))

    # Notifications
    NOTIFY_WEBHOOK_URL = os.environ.get('NOTIFY_WEBHOOK_URL')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    BACKUP_COOLDOWN_SECONDS = 0


class TestingConfig(Config):
    """Test configuration"""
    TESTING = True
    DEBUG = False
    TEMP_DIR = os.path.join(tempfile.gettempdir(), 'nsbackup-test')
    BACKUP_SCHEDULE_CRON = ''
    BACKUP_API_TOKEN = 'test-token'
    BACKUP_CHANNEL_IDS = []
    BACKUP_COOLDOWN_SECONDS = 0
    COLLECTION_RETRY_DELAY_SECONDS = 0
    UPLOAD_BACKOFF_SECONDS = 0
    S3_BUCKET = 'test-bucket'
    MONGODB_DATABASE = 'nightscout'
    NOTIFY_WEBHOOK_URL = None


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
