import os


def _env_flag(name, default):
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Runtime settings, read from the environment with development defaults."""

    def __init__(self, **overrides):
        self.SECRET_KEY = os.environ.get('SECRET_KEY', 'your-secret-key-change-in-production')
        self.FLASK_ENV = os.environ.get('FLASK_ENV', 'development')
        self.PORT = int(os.environ.get('PORT', 5000))
        self.STORAGE_DIR = os.environ.get('VTT_STORAGE_DIR', 'storage')
        self.BACKUP_LIMIT = int(os.environ.get('VTT_BACKUP_LIMIT', 20))
        self.REALTIME_ENABLED = _env_flag('VTT_REALTIME_ENABLED', True)
        self.REALTIME_CHANNEL = os.environ.get('VTT_REALTIME_CHANNEL', 'campaign')
        self.REALTIME_EVENT = os.environ.get('VTT_REALTIME_EVENT', 'board_state_updated')
        self.LOG_LEVEL = os.environ.get('VTT_LOG_LEVEL', 'INFO')
        self.TESTING = False

        for key, value in overrides.items():
            setattr(self, key.upper(), value)

    @property
    def is_production(self):
        return self.FLASK_ENV == 'production'

    @property
    def debug(self):
        return self.FLASK_ENV == 'development'

    def flask_settings(self):
        return {
            'SECRET_KEY': self.SECRET_KEY,
            'SESSION_COOKIE_SECURE': self.is_production,
            'SESSION_COOKIE_HTTPONLY': True,
            'SESSION_COOKIE_SAMESITE': 'Lax',
            'MAX_CONTENT_LENGTH': 16 * 1024 * 1024,  # 16MB max payload
            'TESTING': self.TESTING,
        }
