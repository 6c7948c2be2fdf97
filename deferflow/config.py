import os
from dataclasses import dataclass


def _env_bool(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    redis_url: str = "redis://localhost:6379/0"
    testing: bool = False
    api_key: str = "dev-key"

    # Worker runtime
    job_timeout_seconds: float = 25.0
    shutdown_grace_seconds: float = 30.0
    worker_poll_seconds: float = 0.5
    worker_concurrency: int = 1

    # Retries
    job_max_attempts: int = 5
    retry_backoff: str = "exponential"
    retry_base_seconds: float = 15.0
    retry_max_seconds: float = 3600.0

    # Queueing / scheduling
    bulk_batch_size: int = 1000
    poll_seconds: float = 0.5
    order_notify_every_seconds: float = 60.0

    render_cache_ttl: int = 3600

    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        settings = cls(
            redis_url=os.getenv("REDIS_URL", cls.redis_url),
            testing=_env_bool("TESTING"),
            api_key=os.getenv("API_KEY", cls.api_key),
            job_timeout_seconds=float(os.getenv("JOB_TIMEOUT_SECONDS", "25")),
            shutdown_grace_seconds=float(os.getenv("SHUTDOWN_GRACE_SECONDS", "30")),
            worker_poll_seconds=float(os.getenv("WORKER_POLL_SECONDS", "0.5")),
            worker_concurrency=int(os.getenv("WORKER_CONCURRENCY", "1")),
            job_max_attempts=int(os.getenv("JOB_MAX_ATTEMPTS", "5")),
            retry_backoff=os.getenv("RETRY_BACKOFF", "exponential"),
            retry_base_seconds=float(os.getenv("RETRY_BASE_SECONDS", "15")),
            retry_max_seconds=float(os.getenv("RETRY_MAX_SECONDS", "3600")),
            bulk_batch_size=int(os.getenv("BULK_BATCH_SIZE", "1000")),
            poll_seconds=float(os.getenv("POLL_SECONDS", "0.5")),
            order_notify_every_seconds=float(os.getenv("ORDER_NOTIFY_EVERY_SECONDS", "60")),
            render_cache_ttl=int(os.getenv("RENDER_CACHE_TTL", "3600")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_json=_env_bool("LOG_JSON", "1"),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        # Jobs must finish inside the host's shutdown grace.
        if self.job_timeout_seconds >= self.shutdown_grace_seconds:
            raise ValueError(
                f"JOB_TIMEOUT_SECONDS ({self.job_timeout_seconds}) must be below "
                f"SHUTDOWN_GRACE_SECONDS ({self.shutdown_grace_seconds})"
            )
        if self.retry_backoff not in ("exponential", "fixed"):
            raise ValueError(f"RETRY_BACKOFF must be 'exponential' or 'fixed', got {self.retry_backoff!r}")
        if self.job_max_attempts < 1:
            raise ValueError("JOB_MAX_ATTEMPTS must be at least 1")
        if self.bulk_batch_size < 1:
            raise ValueError("BULK_BATCH_SIZE must be at least 1")
        if self.worker_concurrency < 1:
            raise ValueError("WORKER_CONCURRENCY must be at least 1")
