"""Database URI and engine options per deployment environment."""
import os

# Environment -> env vars consulted for the database URL, first set wins
DATABASE_URL_VARS = {
    "local": ("LOCAL_DATABASE_URL", "DATABASE_URL"),
    "sandbox": ("SANDBOX_DATABASE_URL",),
    "production": ("PRODUCTION_DATABASE_URL", "DATABASE_URL"),
}

DEFAULT_URLS = {
    "local": "sqlite:///designhub.sqlite",
    "testing": "sqlite:///:memory:",
}

ENVIRONMENT_ALIASES = {
    "development": "local",
    "dev": "local",
    "staging": "sandbox",
    "stage": "sandbox",
    "prod": "production",
    "test": "testing",
}


def normalize_environment(environment=None):
    """Canonical environment name; unknown names fall back to local."""
    if environment is None:
        environment = os.environ.get("FLASK_ENV") or os.environ.get("ENVIRONMENT", "local")
    environment = environment.lower()
    environment = ENVIRONMENT_ALIASES.get(environment, environment)
    if environment not in DATABASE_URL_VARS and environment not in DEFAULT_URLS:
        return "local"
    return environment


def normalize_database_url(url):
    """SQLAlchemy 2 only accepts the postgresql:// scheme."""
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


def get_engine_options(database_uri):
    """
    Pool and connection settings for server databases.

    The sweeper holds connections across Trello calls, so idle connections
    are pinged before reuse. SQLite gets no options.
    """
    if database_uri.startswith("sqlite"):
        return None

    options = {
        "pool_pre_ping": True,
        "pool_recycle": 280,
        "pool_size": int(os.environ.get("DATABASE_POOL_SIZE", 5)),
        "max_overflow": 10,
        "pool_timeout": 30,
    }
    if database_uri.startswith("postgresql"):
        options["connect_args"] = {
            "sslmode": os.environ.get("DATABASE_SSLMODE", "require"),
            "connect_timeout": 10,
            "application_name": "designhub",
        }
    return options


def get_database_config(environment=None):
    """Get (database_uri, engine_options) for an environment.

    Args:
        environment: Environment name or alias ('local', 'sandbox', 'production',
            'testing'). If None, read from FLASK_ENV or ENVIRONMENT.

    Raises:
        ValueError: sandbox or production without a configured database URL
    """
    environment = normalize_environment(environment)

    url_vars = DATABASE_URL_VARS.get(environment, ())
    database_uri = next((os.environ[name] for name in url_vars if os.environ.get(name)), None)
    if database_uri is None:
        database_uri = DEFAULT_URLS.get(environment)
    if database_uri is None:
        raise ValueError(f"{' or '.join(url_vars)} must be set for the {environment} environment")

    database_uri = normalize_database_url(database_uri)
    return database_uri, get_engine_options(database_uri)


def configure_database(app, overrides=None):
    """Configure database settings for the Flask app.

    Explicit overrides (tests, CLI) win over the environment-derived URI.

    Args:
        app: Flask application instance
        overrides: Optional dict of config values applied last
    """
    overrides = overrides or {}

    if "SQLALCHEMY_DATABASE_URI" in overrides:
        database_uri = normalize_database_url(overrides["SQLALCHEMY_DATABASE_URI"])
        engine_options = get_engine_options(database_uri)
    else:
        database_uri, engine_options = get_database_config(app.config.get("ENV"))

    app.config["SQLALCHEMY_DATABASE_URI"] = database_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    if "SQLALCHEMY_ENGINE_OPTIONS" in overrides:
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = overrides["SQLALCHEMY_ENGINE_OPTIONS"]
    elif engine_options:
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options
