import os


class Config:
    """Base configuration"""

    # External tools
    RESTIC_BINARY = os.environ.get('BK_RESTIC_BINARY') or 'restic'
    RSYNC_BINARY = os.environ.get('BK_RSYNC_BINARY') or 'rsync'

    # Stable bind-mount targets for snapshotted sources (same_path)
    MOUNT_ROOT = os.environ.get('BK_MOUNT_ROOT') or '/bk'

    # Advisory per-source locks
    LOCK_DIR = os.environ.get('BK_LOCK_DIR') or '/run/bk'

    # Machine identity (head tag fingerprint, telemetry signature)
    HOST_KEY_PATH = os.environ.get('BK_HOST_KEY') or '/etc/ssh/ssh_host_ed25519_key.pub'
    HOST_PRIVATE_KEY_PATH = os.environ.get('BK_HOST_PRIVATE_KEY') or '/etc/ssh/ssh_host_ed25519_key'

    # Logging (None = console only)
    LOG_DIR = os.environ.get('BK_LOG_DIR')
    LOG_LEVEL = 'INFO'

    # Notifications / telemetry
    HTTP_TIMEOUT = int(os.environ.get('BK_HTTP_TIMEOUT', 10))

    # restic backup defaults
    DEFAULT_READ_CONCURRENCY = 2
    DEFAULT_COMPRESSION = 'auto'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'

    # Keep mounts and locks inside the working tree
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    MOUNT_ROOT = os.path.join(DATA_DIR, 'mnt')
    LOCK_DIR = os.path.join(DATA_DIR, 'locks')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
