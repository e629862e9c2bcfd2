from pydantic_settings import BaseSettings
from pydantic import Field

class Settings(BaseSettings):
    env: str = Field(default="dev")
    log_level: str = Field(default="INFO")
    log_file: str | None = None
    log_max_bytes: int = Field(default=10 * 1024 * 1024)
    log_backup_count: int = Field(default=5)
    log_json: bool = False
    sentry_dsn: str | None = None

    # DB (sqlite por defecto, postgres en produccion)
    db_url: str = Field(default="sqlite:///exitengine.db")

    # Scheduler
    tick_interval_s: float = 3.0
    price_max_age_s: float = 10.0
    max_workers: int = 8
    reconcile_interval_s: float = 30.0
    metrics_port: int | None = None

    # Profiles
    profile_cache_ttl_s: float = 30.0
    default_profile_id: str = "default"

    # Intents
    require_approval: bool = False
    tick_size: float = 0.0

    # Average-price reset thresholds (fractions)
    avg_reset_pct: float = 0.02
    avg_noise_pct: float = 0.005

    # Persistence retries
    persist_retries: int = 3
    persist_base_delay: float = 0.05
    persist_max_delay: float = 1.0

    # Reconciliation: cancel pending SL intents once loss recovers above these
    sl1_recovery_pct: float = -0.03
    sl2_recovery_pct: float = -0.04

    class Config:
        env_file = ".env"
        extra = "ignore"

settings = Settings()
