"""
Configuration management for the frequent buyer platform.
"""
import os
from dotenv import load_dotenv

load_dotenv()


class BaseConfig:
    """Base configuration."""
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Square defaults (access tokens are per-tenant)
    SQUARE_API_VERSION = os.getenv('SQUARE_API_VERSION', '2025-01-16')
    SQUARE_BASE_URL = os.getenv('SQUARE_BASE_URL', 'https://connect.squareup.com')
    POS_HTTP_TIMEOUT = float(os.getenv('POS_HTTP_TIMEOUT', '15'))

    # POS sync runs on a bounded worker pool after the ledger commits
    POS_SYNC_MAX_WORKERS = int(os.getenv('POS_SYNC_MAX_WORKERS', '4'))
    POS_SYNC_EAGER = False

    # "One free unit" cap when neither purchase history nor catalog price is known
    DEFAULT_MAX_DISCOUNT_CENTS = int(os.getenv('DEFAULT_MAX_DISCOUNT_CENTS', '5000'))

    # Catch-up reconciliation
    CATCHUP_HOURS_BACK = int(os.getenv('CATCHUP_HOURS_BACK', '6'))
    CATCHUP_MAX_ORDERS = int(os.getenv('CATCHUP_MAX_ORDERS', '500'))

    # Failed webhook event retries
    FAILED_EVENT_MAX_ATTEMPTS = int(os.getenv('FAILED_EVENT_MAX_ATTEMPTS', '5'))

    SCHEDULER_ENABLED = os.getenv('ENABLE_SCHEDULER') == 'true'


class DevelopmentConfig(BaseConfig):
    """Development configuration."""
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL',
        'sqlite:///frequent_buyer_dev.db'  # SQLite fallback for local dev
    )


class ProductionConfig(BaseConfig):
    """Production configuration."""
    DEBUG = False

    _db_url = os.getenv('DATABASE_URL', '')
    if _db_url.startswith('postgres://'):
        # SQLAlchemy requires postgresql:// not postgres://
        _db_url = _db_url.replace('postgres://', 'postgresql://', 1)

    SQLALCHEMY_DATABASE_URI = _db_url

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 5,
        'pool_recycle': 300,
        'pool_pre_ping': True,  # Verify connections before using
    }

    _secret_key = os.getenv('SECRET_KEY', '')

    @classmethod
    def validate_secret_key(cls) -> str:
        """
        Validate SECRET_KEY in production environment.

        Raises:
            RuntimeError: If SECRET_KEY is missing or too short
        """
        if not cls._secret_key:
            raise RuntimeError(
                "CRITICAL: SECRET_KEY environment variable is not set!\n"
                "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )

        if len(cls._secret_key) < 32:
            raise RuntimeError(
                "CRITICAL: SECRET_KEY is too short (minimum 32 characters required)!"
            )

        return cls._secret_key

    SECRET_KEY = _secret_key  # Validated at app startup


class TestingConfig(BaseConfig):
    """Testing configuration."""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    POS_SYNC_EAGER = True
    SCHEDULER_ENABLED = False


config_map = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig
}


def get_config(config_name: str = 'development'):
    """Get configuration class by name."""
    return config_map.get(config_name, DevelopmentConfig)


def validate_config(config_name: str = 'development') -> None:
    """
    Validate configuration before app startup.

    Raises:
        RuntimeError: If validation fails in production
    """
    if config_name == 'production':
        ProductionConfig.validate_secret_key()
