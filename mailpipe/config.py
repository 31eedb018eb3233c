import os
from dataclasses import dataclass, fields
from dotenv import load_dotenv

from mailpipe.logging_config import get_logger

load_dotenv()

logger = get_logger(__name__)


def _env_bool(name, default="false"):
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Base configuration class with common settings."""
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")

    # Template generation scan
    GENERATION_SCAN_INTERVAL_SECONDS = os.environ.get("GENERATION_SCAN_INTERVAL_SECONDS", 60)
    GENERATION_BATCH_SIZE = os.environ.get("GENERATION_BATCH_SIZE", 20)
    MAX_TEMPLATE_RETRIES = os.environ.get("MAX_TEMPLATE_RETRIES", 3)
    TEMPLATE_RETRY_DELAY_MINUTES = os.environ.get("TEMPLATE_RETRY_DELAY_MINUTES", 10)
    GENERATION_TIMEOUT_SECONDS = os.environ.get("GENERATION_TIMEOUT_SECONDS", 30)
    GENERATION_ITEM_DELAY_SECONDS = os.environ.get("GENERATION_ITEM_DELAY_SECONDS", 0.5)

    # Email dispatch scan
    DISPATCH_SCAN_INTERVAL_SECONDS = os.environ.get("DISPATCH_SCAN_INTERVAL_SECONDS", 120)
    DISPATCH_BATCH_SIZE = os.environ.get("DISPATCH_BATCH_SIZE", 50)
    DISPATCH_CHUNK_SIZE = os.environ.get("DISPATCH_CHUNK_SIZE", 1)
    DISPATCH_ITEM_DELAY_SECONDS = os.environ.get("DISPATCH_ITEM_DELAY_SECONDS", 0.2)
    SEND_TIMEOUT_SECONDS = os.environ.get("SEND_TIMEOUT_SECONDS", 30)
    MAX_SEND_RETRIES = os.environ.get("MAX_SEND_RETRIES", 3)

    # Pipelines
    MAX_RECIPIENTS_PER_PIPELINE = os.environ.get("MAX_RECIPIENTS_PER_PIPELINE", 50)
    PIPELINE_LOG_RETENTION_DAYS = os.environ.get("PIPELINE_LOG_RETENTION_DAYS", 90)
    SHUTDOWN_TIMEOUT_SECONDS = os.environ.get("SHUTDOWN_TIMEOUT_SECONDS", 30)

    # Background scheduler - only one process per deployment may enable it
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED")

    # Outbound email
    SKIP_REAL_EMAIL_SENDING = _env_bool("SKIP_REAL_EMAIL_SENDING")
    POSTMARK_SERVER_TOKEN = os.environ.get("POSTMARK_SERVER_TOKEN")
    POSTMARK_API_URL = os.environ.get("POSTMARK_API_URL", "https://api.postmarkapp.com")
    EMAIL_FROM = os.environ.get("EMAIL_FROM", "newsletter@example.com")

    # Content generation
    CONTENT_GENERATOR = os.environ.get("CONTENT_GENERATOR", "mock")
    OLLAMA_URL = os.environ.get("OLLAMA_URL", "http://localhost:11434")
    OLLAMA_MODEL = os.environ.get("OLLAMA_MODEL", "mistral")

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FILE = os.environ.get("LOG_FILE")


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
    """Configuration used by the test suite."""
    ENV = "testing"
    DEBUG = False
    TESTING = True
    SCHEDULER_ENABLED = False
    SKIP_REAL_EMAIL_SENDING = True
    CONTENT_GENERATOR = "mock"
    GENERATION_ITEM_DELAY_SECONDS = 0
    DISPATCH_ITEM_DELAY_SECONDS = 0
    GENERATION_TIMEOUT_SECONDS = 5
    SEND_TIMEOUT_SECONDS = 5
    SHUTDOWN_TIMEOUT_SECONDS = 1
    LOG_FILE = None


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


@dataclass(frozen=True)
class PipelineSettings:
    """Normalised pipeline engine options.

    Values outside their accepted range are replaced by the default with a
    warning, the same way a bad environment variable never stops the service.
    """
    generation_scan_interval_seconds: int = 60
    generation_batch_size: int = 20
    max_template_retries: int = 3
    template_retry_delay_minutes: int = 10
    generation_timeout_seconds: float = 30
    generation_item_delay_seconds: float = 0.5
    dispatch_scan_interval_seconds: int = 120
    dispatch_batch_size: int = 50
    dispatch_chunk_size: int = 1
    dispatch_item_delay_seconds: float = 0.2
    send_timeout_seconds: float = 30
    max_send_retries: int = 3
    max_recipients_per_pipeline: int = 50
    pipeline_log_retention_days: int = 90
    shutdown_timeout_seconds: float = 30

    # (minimum, maximum) accepted for each option; None means unbounded
    RANGES = {
        "generation_scan_interval_seconds": (5, 3600),
        "generation_batch_size": (1, 500),
        "max_template_retries": (1, 10),
        "template_retry_delay_minutes": (1, 60),
        "generation_timeout_seconds": (1, 600),
        "generation_item_delay_seconds": (0, 60),
        "dispatch_scan_interval_seconds": (5, 3600),
        "dispatch_batch_size": (1, 500),
        "dispatch_chunk_size": (1, 500),
        "dispatch_item_delay_seconds": (0, 60),
        "send_timeout_seconds": (1, 600),
        "max_send_retries": (0, 10),
        "max_recipients_per_pipeline": (1, 10000),
        "pipeline_log_retention_days": (1, None),
        "shutdown_timeout_seconds": (0, 600),
    }

    @classmethod
    def from_mapping(cls, mapping) -> "PipelineSettings":
        """Build settings from a Flask config (or any mapping with upper-case keys)."""
        values = {}
        for field in fields(cls):
            key = field.name.upper()
            if key not in mapping or mapping[key] in (None, ""):
                continue
            caster = float if field.type in (float, "float") else int
            try:
                value = caster(mapping[key])
            except (TypeError, ValueError):
                logger.warning("Invalid pipeline setting, using default",
                               setting=key, value=mapping[key], default=field.default)
                continue
            low, high = cls.RANGES.get(field.name, (None, None))
            if (low is not None and value < low) or (high is not None and value > high):
                logger.warning("Pipeline setting out of range, using default",
                               setting=key, value=value, minimum=low, maximum=high,
                               default=field.default)
                continue
            values[field.name] = value
        return cls(**values)
