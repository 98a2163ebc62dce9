from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional
import os

class Settings(BaseSettings):
    APP_NAME: str = "fleetctl"
    VERSION: str = "1.0.0"
    DATABASE_URL: str = os.getenv("FLEETCTL_DATABASE_URL", "sqlite:///./fleetctl.db")
    SECRET_KEY: str = "fleetctl-secret-key-change-me"
    DEBUG: bool = False

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_POLL_INTERVAL: int = 60  # seconds
    SCHEDULER_SHUTDOWN_TIMEOUT: int = 30

    # Execution
    MAX_CONCURRENT_HOSTS: int = 5
    DEFAULT_COMMAND_TIMEOUT: int = 300
    SSH_CONNECT_TIMEOUT: int = 15
    SSH_KEEPALIVE_INTERVAL: int = 30  # seconds, 0 disables keepalives
    SSH_KNOWN_HOSTS: Optional[str] = None  # None disables host key checking
    SSH_KEY_PATH: Optional[str] = os.getenv("FLEETCTL_SSH_KEY_PATH")

    # Notifications
    NOTIFICATION_SNIPPET_LENGTH: int = 200

    # History retention
    RETENTION_DAYS: int = 30
    RETENTION_MAX_RUNS: int = 200

    class Config:
        env_file = ".env"
        env_prefix = "FLEETCTL_"

@lru_cache()
def get_settings():
    return Settings()
