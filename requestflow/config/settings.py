"""Engine Settings - Central Configuration"""
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="REQUESTFLOW_",
        case_sensitive=False,
        extra="ignore"
    )

    # MongoDB (optional persistent store)
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "requestflow_dev"

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"
    log_to_file: bool = False

    # Engine limits
    max_manager_depth: int = 10  # Deepest MANAGER_LEVEL_N accepted
    max_subworkflow_depth: int = 3  # Nested subworkflow references
    definition_cache_size: int = 128  # Compiled definitions kept in memory

    # Request leases (MongoDB store)
    lock_ttl_seconds: int = 30  # Lease lifetime, an expired lease may be taken over
    lock_timeout_seconds: float = 5.0  # How long a writer waits for a held lease
    lock_poll_seconds: float = 0.05

    # Environment
    environment: str = "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
