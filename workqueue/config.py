# workqueue/config.py
"""
Workqueue Configuration Module - Environment-based configuration
Settings come from the process environment and an optional .env file
"""

import logging.config
import os
from typing import List, Optional
from functools import lru_cache

from dotenv import load_dotenv

# Load .env file if present
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Settings:
    """Application settings loaded from environment variables"""

    # ==========================================================================
    # Application Settings
    # ==========================================================================
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: Optional[str] = os.getenv("LOG_FILE") or None
    LOG_MAX_SIZE_MB: int = int(os.getenv("LOG_MAX_SIZE_MB", "100"))

    # ==========================================================================
    # Database Configuration
    # ==========================================================================
    @property
    def DATABASE_URL(self) -> str:
        """Get database URL with fallback for development"""
        url = os.getenv("DATABASE_URL")
        if url:
            return url
        # Default to SQLite for development
        return "sqlite:///./workqueue.db"

    DB_POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "5"))
    DB_MAX_OVERFLOW: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))

    # ==========================================================================
    # Task Defaults
    # ==========================================================================
    TASK_DEFAULT_MAX_RETRIES: int = int(os.getenv("TASK_DEFAULT_MAX_RETRIES", "3"))
    TASK_DEFAULT_TIMEOUT_MS: int = int(os.getenv("TASK_DEFAULT_TIMEOUT_MS", "300000"))  # 5 minutes

    # ==========================================================================
    # Worker Settings
    # ==========================================================================
    TASK_BATCH_SIZE: int = int(os.getenv("TASK_BATCH_SIZE", "5"))
    TASK_MAX_BATCH_SIZE: int = int(os.getenv("TASK_MAX_BATCH_SIZE", "50"))
    TASK_POLL_INTERVAL_SECONDS: float = float(os.getenv("TASK_POLL_INTERVAL_SECONDS", "5"))
    TASK_MAX_CONCURRENT: int = int(os.getenv("TASK_MAX_CONCURRENT", "3"))

    # ==========================================================================
    # Maintenance Settings
    # ==========================================================================
    STUCK_TASK_THRESHOLD_MINUTES: int = int(os.getenv("STUCK_TASK_THRESHOLD_MINUTES", "10"))
    STUCK_TASK_RECOVERY_ENABLED: bool = _env_bool("STUCK_TASK_RECOVERY_ENABLED", "true")
    CLEANUP_RETENTION_DAYS: int = int(os.getenv("CLEANUP_RETENTION_DAYS", "7"))

    # ==========================================================================
    # Handlers
    # ==========================================================================
    # Comma-separated "module[:attribute]" entries, each naming a TaskHandlerRegistry
    HANDLER_MODULES: List[str] = [
        m.strip() for m in os.getenv("HANDLER_MODULES", "").split(",") if m.strip()
    ]

    # ==========================================================================
    # Security
    # ==========================================================================
    API_KEY: Optional[str] = os.getenv("API_KEY") or None
    CRON_SECRET: Optional[str] = os.getenv("CRON_SECRET") or None

    def get_log_config(self) -> dict:
        """Get structured logging configuration"""
        handlers = {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "filters": ["correlation"],
                "stream": "ext://sys.stdout"
            }
        }
        if self.LOG_FILE:
            handlers["file"] = {
                "class": "logging.handlers.RotatingFileHandler",
                "formatter": "default",
                "filters": ["correlation"],
                "filename": self.LOG_FILE,
                "maxBytes": self.LOG_MAX_SIZE_MB * 1024 * 1024,
                "backupCount": 5
            }

        return {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "correlation": {
                    "()": "workqueue.middleware.correlation.CorrelationIdFilter"
                }
            },
            "formatters": {
                "default": {
                    "format": "%(asctime)s [%(levelname)s] [%(correlation_id)s] %(name)s: %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S"
                }
            },
            "handlers": handlers,
            "root": {
                "level": self.LOG_LEVEL,
                "handlers": list(handlers)
            }
        }


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


def configure_logging(config: Optional[Settings] = None) -> None:
    """Apply the logging configuration for a service or worker process"""
    logging.config.dictConfig((config or get_settings()).get_log_config())


# Global settings instance
settings = get_settings()
