"""Application Settings - Central Configuration"""
from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )
    
    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "approval_engine_dev"
    
    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"
    
    # CORS - set to "*" to allow all origins
    cors_origins: str = "*"
    
    # Bearer tokens (HS256 shared secret issued by the IAM module)
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    jwt_audience: str = ""
    
    # Downstream lifecycle manager
    lifecycle_base_url: str = "http://localhost:8100"
    lifecycle_timeout_seconds: float = 10.0
    
    # Approver resolution
    approver_cache_ttl_seconds: int = 300
    default_rule_priority: int = 100
    max_org_depth: int = 32
    
    # Engine
    empty_stage_policy: str = "skip"  # skip | fail
    instance_lock_timeout_ms: int = 5000
    instance_lock_duration_seconds: int = 30
    lock_poll_interval_ms: int = 100
    system_actor_id: str = "system"
    # Roles allowed to bypass, reassign, release holds and cancel (comma separated)
    admin_roles: str = "approval_admin"
    
    # SLA timers
    reminder_attempts: int = 3
    reminder_backoff_ms: int = 5000
    escalation_attempts: int = 3
    escalation_backoff_ms: int = 10000
    rehydration_reminder_ratio: float = 0.75
    scheduler_enabled: bool = True
    rehydrate_on_startup: bool = True
    
    # Template store
    template_page_size_max: int = 100
    
    # Environment
    environment: str = "development"
    debug: bool = True
    
    @property
    def admin_roles_list(self) -> List[str]:
        return [role.strip() for role in self.admin_roles.split(",") if role.strip()]

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins string to list"""
        return [origin.strip() for origin in self.cors_origins.split(",")]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
