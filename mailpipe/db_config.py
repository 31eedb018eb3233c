"""Database URI and engine options per environment."""
import os

from sqlalchemy.pool import QueuePool, StaticPool

# Environment name -> env vars holding the PostgreSQL URL, first match wins
POSTGRES_URL_VARS = {
    "sandbox": ("SANDBOX_DATABASE_URL",),
    "production": ("PRODUCTION_DATABASE_URL", "DATABASE_URL"),
}

ENVIRONMENT_ALIASES = {
    "local": "local", "development": "local", "dev": "local",
    "sandbox": "sandbox", "staging": "sandbox", "stage": "sandbox",
    "production": "production", "prod": "production",
    "testing": "testing", "test": "testing",
}


def postgres_engine_options():
    # Sized for the two scans, a running pipeline and the HTTP workers
    return {
        "pool_pre_ping": True,
        "pool_recycle": 280,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
        "poolclass": QueuePool,
        "connect_args": {
            "sslmode": "require",
            "connect_timeout": 10,
            "application_name": "mailpipe",
            "options": "-c statement_timeout=30000",
        },
    }


def get_database_config(environment):
    """
    Returns:
        tuple: (database_uri, engine_options or None)

    Raises:
        ValueError: If a PostgreSQL environment has no database URL configured
    """
    environment = ENVIRONMENT_ALIASES.get((environment or "").lower(), "local")

    if environment == "testing":
        # One in-memory database shared by every connection, including scan threads
        return "sqlite://", {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}

    if environment in POSTGRES_URL_VARS:
        names = POSTGRES_URL_VARS[environment]
        url = next((os.environ[n] for n in names if os.environ.get(n)), None)
        if not url:
            raise ValueError(f"{' or '.join(names)} must be set for the {environment} environment")
        return url, postgres_engine_options()

    return os.environ.get("LOCAL_DATABASE_URL") or "sqlite:///mailpipe.sqlite", None


def configure_database(app):
    """Set SQLALCHEMY_* options on the app from the config class environment."""
    environment = app.config.get("ENV") or os.environ.get("FLASK_ENV") or os.environ.get("ENVIRONMENT", "local")
    database_uri, engine_options = get_database_config(environment)

    app.config["SQLALCHEMY_DATABASE_URI"] = database_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    if engine_options:
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options
