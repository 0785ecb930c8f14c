"""
Configuration for the Teaching Center billing application
"""
import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
INSTANCE_PATH = os.path.join(BASE_DIR, 'instance')


def database_url(default):
    url = os.environ.get('DATABASE_URL')
    if url and url.startswith('postgres://'):
        # Render/Heroku style URLs, SQLAlchemy wants the postgresql scheme
        return url.replace('postgres://', 'postgresql://', 1)
    return url or default


class Config:
    DEBUG = False
    TESTING = False

    SECRET_KEY = os.environ.get('SECRET_KEY', 'change-me-in-production')

    SQLALCHEMY_DATABASE_URI = database_url(f"sqlite:///{os.path.join(INSTANCE_PATH, 'billing.db')}")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # Billing
    # Day of month a monthly fee falls due: a number (clamped to month length) or 'last'
    PAYMENT_DUE_DAY = os.environ.get('PAYMENT_DUE_DAY', '8')
    # Enrollment billing runs up to this month of the following calendar year
    SCHOOL_YEAR_END_MONTH = int(os.environ.get('SCHOOL_YEAR_END_MONTH', 7))
    CURRENCY = os.environ.get('CURRENCY', 'EUR')
    SCHOOL_NAME = os.environ.get('SCHOOL_NAME', 'Teaching Center Excellence')

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Seed admin account, created by build.py / `flask init-db` when no user exists
    DEFAULT_USERNAME = os.environ.get('DEFAULT_USERNAME')
    DEFAULT_PASSWORD = os.environ.get('DEFAULT_PASSWORD')


class DevelopmentConfig(Config):
    DEBUG = True
    SESSION_COOKIE_SECURE = False


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'testing'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    WTF_CSRF_ENABLED = False
    PAYMENT_DUE_DAY = '8'
    SCHOOL_YEAR_END_MONTH = 7
    LOG_LEVEL = 'WARNING'


class ProductionConfig(Config):
    PREFERRED_URL_SCHEME = 'https'

    # Security
    SESSION_COOKIE_SECURE = True
    PERMANENT_SESSION_LIFETIME = 3600  # 1 hour

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 10,
        'pool_timeout': 30,
        'pool_recycle': 1800,  # Recycle connections after 30 minutes
        'max_overflow': 2,
        'pool_pre_ping': True,
    }

    @staticmethod
    def init_app(app):
        if app.config['SECRET_KEY'] == 'change-me-in-production':
            app.config['SECRET_KEY'] = os.urandom(24)


CONFIGS = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}


def get_config(name=None):
    name = name or os.environ.get('APP_ENV', 'development')
    return CONFIGS.get(name.lower(), DevelopmentConfig)
