# ==== APPLICATION SETTINGS CONFIGURATION ==== #

"""
Application settings configuration for the approval workflow service.

This module provides centralized configuration management using Pydantic Settings
with environment variable loading and validation for the workflow engine,
escalation scheduler, notification emitter and observability stack.
"""

from typing import Dict, List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


# ==== MAIN SETTINGS CLASS ==== #


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Complex values (lists and mappings) are read as JSON strings, for example
    ``ESCALATION_ROLE_HIERARCHY='["manager", "hr", "admin"]'``.
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        extra='ignore'
    )

    # --► CORE APPLICATION SETTINGS
    APP_ENV: str = "dev"
    SERVICE_NAME: str = "approval-workflows"
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str | None = None

    # --► DATABASE CONFIGURATION
    DATABASE_URL: str = "sqlite+aiosqlite:///./approvals.db"
    DATABASE_CREATE_SCHEMA: bool = True
    PERSISTENCE_TIMEOUT_SECONDS: float = 5.0
    CAS_MAX_ATTEMPTS: int = 5

    # --► REDIS CONFIGURATION (OPTIONAL, DISTRIBUTED SWEEP LOCK)
    REDIS_URL: str | None = None

    # --► OBSERVABILITY CONFIGURATION
    OTEL_EXPORTER_OTLP_ENDPOINT: str | None = None
    OTEL_EXPORTER_OTLP_HEADERS: str | None = None
    OTEL_SERVICE_NAME: str | None = None
    OTEL_RESOURCE_ATTRIBUTES: str | None = None

    # --► NOTIFICATION EMITTER
    NOTIFICATION_WEBHOOK_URL: str | None = None
    NOTIFICATION_TIMEOUT_SECONDS: float = 3.0
    NOTIFICATION_RETRY_MAX_ATTEMPTS: int = 2

    # --► WORKFLOW BEHAVIOUR
    RETURN_POLICY: Literal["reset", "resume"] = "reset"
    REQUIRE_COMMENT_ON_REJECT: bool = False
    ADMIN_ROLES: List[str] = ["admin"]

    # --► ESCALATION SCHEDULER
    ESCALATION_ENABLED: bool = True
    ESCALATION_SWEEP_INTERVAL_SECONDS: float = 300.0
    ESCALATION_LOCK_TTL_SECONDS: int = 240
    ESCALATION_LOCK_KEY: str = "lock:approvals:escalation-sweep"
    ESCALATION_ROLE_HIERARCHY: List[str] = ["manager", "hr", "admin"]
    ESCALATION_FALLBACK_ROLE: str = "admin"

    # --► DEFAULT STEP TIMEOUTS BY PRIORITY (HOURS)
    TIMEOUT_HOURS_URGENT: float = 24.0
    TIMEOUT_HOURS_HIGH: float = 24.0
    TIMEOUT_HOURS_NORMAL: float = 48.0
    TIMEOUT_HOURS_LOW: float = 72.0

    # --► DEFAULT APPROVAL POLICY THRESHOLDS
    LEAVE_HR_REVIEW_DAYS: float = 5
    EXPENSE_FINANCE_REVIEW_AMOUNT: float = 100_000
    EXPENSE_HR_REVIEW_AMOUNT: float = 500_000
    OVERTIME_HR_REVIEW_HOURS: float = 40
    OVERTIME_FINANCE_REVIEW_HOURS: float = 60
    PURCHASE_EXECUTIVE_REVIEW_AMOUNT: float = 1_000_000

    # --► APPROVER DIRECTORY SEED
    DIRECTORY_ROLE_ASSIGNMENTS: Dict[str, List[str]] = {}
    DIRECTORY_MANAGERS: Dict[str, str] = {}
    DIRECTORY_DISPLAY_NAMES: Dict[str, str] = {}

    # --► PREFECT WORKFLOW ORCHESTRATION
    PREFECT_FLOW_NAME: str = "escalation_sweep"
    PREFECT_SCHEDULE_CRON: str = "*/5 * * * *"


# ==== GLOBAL SETTINGS INSTANCE ==== #


# Global settings instance for application-wide access
settings = Settings()


def get_settings() -> Settings:
    """
    Get global settings instance.

    Returns:
        Settings: Global application settings instance
    """
    return settings
