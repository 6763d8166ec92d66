from __future__ import annotations
import os
from pydantic import BaseModel

class Settings(BaseModel):
    environment: str = os.getenv("ENVIRONMENT", "dev")
    app_name: str = os.getenv("APP_NAME", "chainproof-api")
    app_display_name: str = os.getenv("APP_DISPLAY_NAME", "ChainProof")
    app_version: str = os.getenv("APP_VERSION", "0.1.0")
    git_sha: str = os.getenv("GIT_SHA", "dev")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "*").split(",")
    database_url: str = os.getenv("DATABASE_URL", "postgresql+asyncpg://postgres:postgres@db:5432/chainproof_dev")
    s3_endpoint: str = os.getenv("S3_ENDPOINT", "http://minio:9000")
    s3_access_key: str = os.getenv("S3_ACCESS_KEY", "minioadmin")
    s3_secret_key: str = os.getenv("S3_SECRET_KEY", "minioadmin")
    s3_bucket_uploads: str = os.getenv("S3_BUCKET_UPLOADS", "chainproof-images-dev")
    upload_max_bytes: int = int(os.getenv("UPLOAD_MAX_BYTES", str(10 * 1024 * 1024)))

    # Admin access (empty password disables admin login)
    admin_password: str = os.getenv("ADMIN_PASSWORD", "")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change-me")
    admin_token_ttl_min: int = int(os.getenv("ADMIN_TOKEN_TTL_MIN", "60"))

    # Proving service and ledger gateway
    prover_url: str = os.getenv("PROVER_URL", "http://prover:8080")
    ledger_url: str = os.getenv("LEDGER_URL", "http://ledger-gateway:8080")
    ledger_contract_address: str = os.getenv("LEDGER_CONTRACT_ADDRESS", "")
    external_call_timeout_seconds: float = float(os.getenv("EXTERNAL_CALL_TIMEOUT_SECONDS", "300"))

    # Job queue
    queue_max_attempts: int = int(os.getenv("QUEUE_MAX_ATTEMPTS", "3"))
    queue_backoff_base: float = float(os.getenv("QUEUE_BACKOFF_BASE", "5"))  # delay = base ** attempts seconds
    queue_poll_interval_seconds: float = float(os.getenv("QUEUE_POLL_INTERVAL_SECONDS", "1"))
    worker_concurrency: int = int(os.getenv("WORKER_CONCURRENCY", "2"))
    job_timeout_seconds: float = float(os.getenv("JOB_TIMEOUT_SECONDS", "900"))
    # must stay above job_timeout_seconds or live jobs get requeued
    stale_job_timeout_seconds: float = float(os.getenv("STALE_JOB_TIMEOUT_SECONDS", "1800"))
    stale_sweep_interval_seconds: float = float(os.getenv("STALE_SWEEP_INTERVAL_SECONDS", "60"))

    # Ledger reconciliation
    monitoring_enabled: bool = os.getenv("MONITORING_ENABLED", "1") == "1"
    monitor_interval_seconds: float = float(os.getenv("MONITOR_INTERVAL_SECONDS", "300"))
    monitor_lookback_blocks: int = int(os.getenv("MONITOR_LOOKBACK_BLOCKS", "100"))
    finality_threshold: int = int(os.getenv("FINALITY_THRESHOLD", "15"))
    abandon_threshold: int = int(os.getenv("ABANDON_THRESHOLD", "15"))
    pending_warn_threshold: int = int(os.getenv("PENDING_WARN_THRESHOLD", "10"))

settings = Settings()
