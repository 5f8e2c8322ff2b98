"""
Challenge Deployer - Application Configuration
Pydantic Settings with environment variable support
"""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, RedisDsn, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Values are read once at process start and are immutable afterwards.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    app_name: str = "Challenge Deployer"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "production"

    # ==========================================================================
    # Server
    # ==========================================================================
    host: str = "0.0.0.0"
    port: int = 8000

    # ==========================================================================
    # Routing
    # ==========================================================================
    base_domain: str = "challenges.localhost"
    api_domain: str = "api.localhost"

    # ==========================================================================
    # Kubernetes
    # ==========================================================================
    k8s_namespace: str = "challenges"
    container_secret: str = ""  # imagePullSecret applied to every workload
    kubeconfig_path: Optional[str] = None
    ingress_class_name: Optional[str] = None
    service_type: str = "ClusterIP"
    cluster_retry_attempts: int = Field(default=5, ge=1)
    cluster_retry_backoff: float = Field(default=0.5, ge=0)
    cluster_retry_backoff_max: float = Field(default=8.0, ge=0)

    # ==========================================================================
    # Challenge repository (Redis)
    # ==========================================================================
    redis_url: RedisDsn = Field(default="redis://localhost:6379/0")
    redis_password: str = ""
    redis_pool_size: int = 10
    repository_key_prefix: str = "challenge:"
    repository_breaker_fail_max: int = 5
    repository_breaker_reset_timeout: int = 30

    # ==========================================================================
    # Challenge configuration cache
    # ==========================================================================
    challenge_config_cache_ttl: float = Field(default=60, gt=0)  # seconds

    # ==========================================================================
    # Deployment lifecycle
    # ==========================================================================
    deployment_ttl_seconds: Optional[int] = Field(default=None, gt=0)
    failed_record_retention_seconds: int = 600
    reaper_interval_seconds: float = 30
    reconcile_on_startup: bool = True
    refresh_status_from_cluster: bool = True

    # ==========================================================================
    # CORS
    # ==========================================================================
    cors_origins: List[str] = Field(default_factory=list)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | List[str]) -> List[str]:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("base_domain", "api_domain")
    @classmethod
    def strip_domain(cls, v: str) -> str:
        return v.strip().strip(".").lower()

    @property
    def allowed_origins(self) -> List[str]:
        """CORS origins, defaulting to the API domain."""
        return self.cors_origins or [f"https://{self.api_domain}"]

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    # ==========================================================================
    # Logging
    # ==========================================================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "console"] = "json"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
