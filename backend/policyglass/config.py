"""Application-wide configuration loader.

Every tunable of the job pipeline is read from the environment once, at import
time, and exposed through the module-level :data:`settings` object. Services
take explicit values in their constructors; only the app factory reads
``settings`` so that tests can build isolated instances.
"""

import os


def _bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def clamp_concurrency(value: int) -> int:
    """Keep the concurrency cap inside the supported 1-10 range."""
    return max(1, min(int(value), 10))


class Settings:
    """Settings helper that gracefully falls back to sane defaults.

    Rationale
    ---------
    When docker-compose injects an environment variable whose value is empty
    (e.g. `DATABASE_URL=""`) ``os.getenv("DATABASE_URL", default)`` returns an
    empty string *not* ``None``.  That empty string would then override the
    in-code default, so every setting uses the idiom

        os.getenv(KEY) or DEFAULT

    and *falsy* values ("", None) are replaced by the specified DEFAULT.
    """

    DATABASE_URL: str = os.getenv('DATABASE_URL') or 'postgresql://policyglass:policyglass@db:5432/policyglass'
    DB_ECHO: bool = _bool(os.getenv('DB_ECHO') or '0')

    # Scheduler
    MAX_CONCURRENT_JOBS: int = clamp_concurrency(os.getenv('MAX_CONCURRENT_JOBS') or '3')
    POLL_INTERVAL_SECONDS: float = float(os.getenv('POLL_INTERVAL_SECONDS') or '5')
    ERROR_BACKOFF_SECONDS: float = float(os.getenv('ERROR_BACKOFF_SECONDS') or '10')
    CLEANUP_INTERVAL_SECONDS: float = float(os.getenv('CLEANUP_INTERVAL_SECONDS') or '3600')
    PENDING_BATCH_SIZE: int = int(os.getenv('PENDING_BATCH_SIZE') or '10')
    PHASE_TIMEOUT_SECONDS: float = float(os.getenv('PHASE_TIMEOUT_SECONDS') or '300')
    JOB_TTL_HOURS: int = int(os.getenv('JOB_TTL_HOURS') or '24')

    # Notifications
    KEEPALIVE_INTERVAL_SECONDS: float = float(os.getenv('KEEPALIVE_INTERVAL_SECONDS') or '30')

    # Phase executors
    OLLAMA_URL: str = os.getenv('OLLAMA_URL') or 'http://ollama:11434'
    OLLAMA_DEFAULT_MODEL: str = os.getenv('OLLAMA_DEFAULT_MODEL') or 'llama3'
    HTTP_TIMEOUT_SECONDS: float = float(os.getenv('HTTP_TIMEOUT_SECONDS') or '120')

    LOG_DIR: str = os.getenv('LOG_DIR') or 'backend/logs'


settings = Settings()
