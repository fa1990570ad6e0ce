"""Configuration for the runmeter pay-per-call execution service."""
import os
import re
import logging
from pydantic_settings import BaseSettings
from typing import Any, Dict, List

logger = logging.getLogger("runmeter.config")

DEFAULT_TOKEN_SECRET = "runmeter_secret_key_change_in_production"

_MEMORY_PATTERN = re.compile(r"^(\d+)([bkmg])$", re.IGNORECASE)


class Settings(BaseSettings):
    # Application settings
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8002"))
    ALLOWED_ORIGINS: List[str] = ["*"]
    RUN_BILLING_WORKER: bool = os.getenv("RUN_BILLING_WORKER", "true").lower() == "true"

    # Storage of usage records and snapshots
    STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "mongo")  # mongo | memory
    MONGO_URI: str = os.getenv("MONGO_URI", "mongodb://localhost:27017")
    DB_NAME: str = os.getenv("DB_NAME", "runmeter")
    DB_CONNECTION_TIMEOUT: int = int(os.getenv("DB_CONNECTION_TIMEOUT", "5"))
    DB_MAX_RETRIES: int = int(os.getenv("DB_MAX_RETRIES", "3"))
    CSV_FALLBACK_DIR: str = os.getenv("CSV_FALLBACK_DIR", "usage_ledger")

    # Durable event log
    EVENT_LOG_BACKEND: str = os.getenv("EVENT_LOG_BACKEND", "redis")  # redis | memory
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    EVENT_STREAM_KEY: str = os.getenv("EVENT_STREAM_KEY", "usage_logs")

    # Sandbox execution
    DOCKER_BINARY: str = os.getenv("DOCKER_BINARY", "docker")
    BASE_IMAGE: str = os.getenv("BASE_IMAGE", "node:18-alpine")
    EXECUTION_TIMEOUT_MS: int = int(os.getenv("EXECUTION_TIMEOUT_MS", "30000"))
    BUILD_TIMEOUT_MS: int = int(os.getenv("BUILD_TIMEOUT_MS", "120000"))
    MAX_MEMORY: str = os.getenv("MAX_MEMORY", "512m")
    MAX_CPU: float = float(os.getenv("MAX_CPU", "0.5"))
    NOFILE_SOFT: int = int(os.getenv("NOFILE_SOFT", "1024"))
    NOFILE_HARD: int = int(os.getenv("NOFILE_HARD", "2048"))
    PIDS_LIMIT: int = int(os.getenv("PIDS_LIMIT", "64"))
    SANDBOX_CONCURRENCY: int = int(os.getenv("SANDBOX_CONCURRENCY", "8"))
    SANDBOX_WORKDIR: str = os.getenv("SANDBOX_WORKDIR", "")  # empty: system temp dir
    CODE_FILENAME: str = os.getenv("CODE_FILENAME", "api.js")
    RUNTIME_COMMAND: str = os.getenv("RUNTIME_COMMAND", "node api.js < request.json")

    # Artifact store collaborator
    ARTIFACT_GATEWAY_URL: str = os.getenv("ARTIFACT_GATEWAY_URL", "http://localhost:8080/ipfs")
    ARTIFACT_TIMEOUT: int = int(os.getenv("ARTIFACT_TIMEOUT", "30"))
    ARTIFACT_RETRY_ATTEMPTS: int = int(os.getenv("ARTIFACT_RETRY_ATTEMPTS", "3"))
    ARTIFACT_CACHE_SIZE: int = int(os.getenv("ARTIFACT_CACHE_SIZE", "128"))
    VERIFY_CONTENT_HASH: bool = os.getenv("VERIFY_CONTENT_HASH", "true").lower() == "true"

    # Metering
    METERING_QUEUE_SIZE: int = int(os.getenv("METERING_QUEUE_SIZE", "10000"))
    PRICING_CACHE_TTL: int = int(os.getenv("PRICING_CACHE_TTL", "300"))  # 5 minutes
    DEFAULT_BASE_PRICE: float = float(os.getenv("DEFAULT_BASE_PRICE", "0.001"))
    DEFAULT_DURATION_PRICE: float = float(os.getenv("DEFAULT_DURATION_PRICE", "0.0001"))
    DEFAULT_DATA_PRICE: float = float(os.getenv("DEFAULT_DATA_PRICE", "0.000001"))

    # Billing worker
    BILLING_GROUP: str = os.getenv("BILLING_GROUP", "billing_worker")
    BILLING_CONSUMER: str = os.getenv("BILLING_CONSUMER", "worker_1")
    BILLING_BATCH_SIZE: int = int(os.getenv("BILLING_BATCH_SIZE", "100"))
    BILLING_INTERVAL_MS: int = int(os.getenv("BILLING_INTERVAL_MS", "5000"))
    REALTIME_TTL_SECONDS: int = int(os.getenv("REALTIME_TTL_SECONDS", "3600"))
    SNAPSHOT_TRIGGER: str = os.getenv("SNAPSHOT_TRIGGER", "catchup")  # catchup | boundary
    SNAPSHOT_SETTLE_SECONDS: int = int(os.getenv("SNAPSHOT_SETTLE_SECONDS", "60"))
    BILLING_CLAIM_IDLE_MS: int = int(os.getenv("BILLING_CLAIM_IDLE_MS", "60000"))

    # JWT identity resolution
    TOKEN_SECRET: str = os.getenv("TOKEN_SECRET", DEFAULT_TOKEN_SECRET)
    ALLOW_DEFAULT_TOKEN: bool = os.getenv("ALLOW_DEFAULT_TOKEN", "false").lower() == "true"
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")

    class Config:
        env_file = ".env"
        case_sensitive = True

    def validate_settings(self):
        """Validate critical settings."""
        if self.TOKEN_SECRET == DEFAULT_TOKEN_SECRET and not self.DEBUG:
            raise ValueError("TOKEN_SECRET must be changed in production!")

        if self.STORAGE_BACKEND not in ("mongo", "memory"):
            raise ValueError(f"Unknown STORAGE_BACKEND: {self.STORAGE_BACKEND}")

        if self.EVENT_LOG_BACKEND not in ("redis", "memory"):
            raise ValueError(f"Unknown EVENT_LOG_BACKEND: {self.EVENT_LOG_BACKEND}")

        if self.SNAPSHOT_TRIGGER not in ("catchup", "boundary"):
            raise ValueError(f"Unknown SNAPSHOT_TRIGGER: {self.SNAPSHOT_TRIGGER}")

        if self.SNAPSHOT_SETTLE_SECONDS < 0:
            raise ValueError("SNAPSHOT_SETTLE_SECONDS must not be negative")

        if not _MEMORY_PATTERN.match(self.MAX_MEMORY):
            raise ValueError(f"MAX_MEMORY must look like 512m, got {self.MAX_MEMORY!r}")

        if self.EXECUTION_TIMEOUT_MS < 1 or self.BUILD_TIMEOUT_MS < 1:
            raise ValueError("Sandbox timeouts must be positive")

        if self.MAX_CPU <= 0:
            raise ValueError("MAX_CPU must be positive")

        if self.BILLING_BATCH_SIZE < 1:
            raise ValueError("BILLING_BATCH_SIZE must be at least 1")

        if self.BILLING_INTERVAL_MS < 1:
            raise ValueError("BILLING_INTERVAL_MS must be positive")

        if self.METERING_QUEUE_SIZE < 1:
            raise ValueError("METERING_QUEUE_SIZE must be at least 1")

        if self.SANDBOX_CONCURRENCY < 1:
            raise ValueError("SANDBOX_CONCURRENCY must be at least 1")


def parse_memory(memory: str) -> int:
    """Convert a docker-style memory string (``512m``) to bytes."""
    units = {"b": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3}
    match = _MEMORY_PATTERN.match(memory.strip()) if memory else None
    if match:
        return int(match.group(1)) * units[match.group(2).lower()]
    return 512 * 1024 ** 2


settings = Settings()

# Validate settings on import
try:
    settings.validate_settings()
except ValueError as e:
    if not settings.DEBUG:
        raise e
    else:
        logger.warning(f"Configuration warning: {e}")


# Helper function to get environment info
def get_environment_info(config: Settings = None) -> Dict[str, Any]:
    """Get environment information for debugging."""
    config = config or settings
    return {
        "kubernetes": bool(os.environ.get("KUBERNETES_SERVICE_HOST")),
        "debug": config.DEBUG,
        "storage_backend": config.STORAGE_BACKEND,
        "event_log_backend": config.EVENT_LOG_BACKEND,
        "csv_fallback_dir": config.CSV_FALLBACK_DIR,
        "base_image": config.BASE_IMAGE,
        "snapshot_trigger": config.SNAPSHOT_TRIGGER,
        "allow_default_token": config.ALLOW_DEFAULT_TOKEN,
    }

