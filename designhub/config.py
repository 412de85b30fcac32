import os
from dotenv import load_dotenv

load_dotenv()


def _env_int(name, default):
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


class Config:
    """Base configuration class with common settings."""
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")

    # Agency-wide Trello account (board provisioning only; card sync uses each
    # client's own trello_config credentials)
    TRELLO_API_KEY = os.environ.get("TRELLO_API_KEY")
    TRELLO_TOKEN = os.environ.get("TRELLO_TOKEN")
    TRELLO_API_BASE_URL = os.environ.get("TRELLO_API_BASE_URL", "https://api.trello.com/1")
    TRELLO_TIMEOUT_SECONDS = _env_int("TRELLO_TIMEOUT_SECONDS", 30)

    # Sync ledger / retry sweeper
    SYNC_MAX_RETRIES = _env_int("SYNC_MAX_RETRIES", 5)
    SYNC_BACKOFF_BASE_MINUTES = _env_int("SYNC_BACKOFF_BASE_MINUTES", 5)
    SYNC_BACKOFF_MAX_EXPONENT = _env_int("SYNC_BACKOFF_MAX_EXPONENT", 6)
    SYNC_BACKOFF_JITTER_SECONDS = _env_int("SYNC_BACKOFF_JITTER_SECONDS", 0)
    SYNC_SWEEP_BATCH_SIZE = _env_int("SYNC_SWEEP_BATCH_SIZE", 10)
    SYNC_SWEEP_INTERVAL_MINUTES = _env_int("SYNC_SWEEP_INTERVAL_MINUTES", 5)
    ENABLE_SYNC_SCHEDULER = os.environ.get("ENABLE_SYNC_SCHEDULER", "").lower() in ("1", "true", "yes")

    # CORS configuration
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")

    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FILE = os.environ.get("LOG_FILE")
    LOG_RETENTION_DAYS = _env_int("LOG_RETENTION_DAYS", 365)


class LocalConfig(Config):
    """Configuration for local development."""
    ENV = "local"
    DEBUG = True


class SandboxConfig(Config):
    """Configuration for sandbox/staging environment."""
    ENV = "sandbox"
    DEBUG = False


class ProductionConfig(Config):
    """Configuration for production environment."""
    ENV = "production"
    DEBUG = False


class TestingConfig(Config):
    """Configuration for the test suite."""
    ENV = "testing"
    DEBUG = False
    TESTING = True
    ENABLE_SYNC_SCHEDULER = False


def get_config():
    """Get the appropriate configuration class based on environment variable.

    Environment is determined by FLASK_ENV or ENVIRONMENT variable:
    - 'local' or 'development' -> LocalConfig
    - 'sandbox' or 'staging' -> SandboxConfig
    - 'production' or 'prod' -> ProductionConfig
    - 'testing' or 'test' -> TestingConfig

    Defaults to LocalConfig if not set.
    """
    env = (os.environ.get("FLASK_ENV") or os.environ.get("ENVIRONMENT", "local")).lower()

    if env in ["local", "development", "dev"]:
        return LocalConfig
    elif env in ["sandbox", "staging", "stage"]:
        return SandboxConfig
    elif env in ["production", "prod"]:
        return ProductionConfig
    elif env in ["testing", "test"]:
        return TestingConfig
    else:
        # Default to local for safety
        return LocalConfig
