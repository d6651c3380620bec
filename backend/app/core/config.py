from typing import Optional
from pydantic import validator
from pydantic_settings import BaseSettings
import secrets


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "PymeBot CRM"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 1

    # Database
    DATABASE_URL: str = "sqlite:///./pymebot.db"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_ECHO: bool = False

    # Redis
    REDIS_URL: str = "redis://localhost:6379"
    REDIS_MAX_CONNECTIONS: int = 50
    TEMPLATE_CACHE_TTL: int = 300  # seconds

    # Celery Configuration
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"
    CELERY_TIMEZONE: str = "UTC"
    SESSION_EXPIRY_INTERVAL: int = 300  # seconds between idle-session sweeps

    # Security
    SECRET_KEY: str = secrets.token_urlsafe(32)

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    # LLM Configuration
    OLLAMA_HOST: str = "http://localhost:11434"
    OLLAMA_MODEL: str = "llama3:8b"
    OLLAMA_TEMPERATURE: float = 0.7
    OLLAMA_MAX_TOKENS: int = 512
    OLLAMA_TIMEOUT: int = 30
    OLLAMA_KEEP_ALIVE: str = "24h"

    # Conversation Engine
    FLOW_MAX_EXECUTION_STEPS: int = 10
    FLOW_MAX_NODE_VISITS: int = 3
    CONVERSATION_IDLE_TIMEOUT_MINUTES: int = 30
    CONVERSATION_HISTORY_LIMIT: int = 50
    INPUT_MAX_RETRIES: int = 3
    DEFAULT_CHANNEL_TYPE: str = "web"
    DEFAULT_USER_NAME: str = "Usuario"
    DEFAULT_COMPANY_NAME: str = "nuestra empresa"
    FALLBACK_ERROR_MESSAGE: str = (
        "Lo siento, ocurrió un error procesando tu mensaje. Por favor, intenta nuevamente."
    )

    # Appointment Scheduling
    SCHEDULING_TIMEZONE: str = "America/Mexico_City"
    DEFAULT_APPOINTMENT_DURATION: int = 30  # minutes
    DEFAULT_APPOINTMENT_BUFFER: int = 0  # minutes
    DEFAULT_MIN_NOTICE_MINUTES: int = 60
    DEFAULT_MAX_FUTURE_DAYS: int = 30
    NEXT_AVAILABLE_SEARCH_DAYS: int = 7

    # Lead Management
    DEFAULT_LEAD_STAGE: str = "first_contact"
    LEAD_FOLLOW_UP_HOURS: int = 24

    # Webhook / Notification Configuration
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None
    WEBHOOK_TIMEOUT: int = 10
    WEBHOOK_RETRY_ATTEMPTS: int = 3
    WEBHOOK_RETRY_BACKOFF_SECONDS: float = 0.5

    # Plan Gating
    FEATURE_GATING_ENABLED: bool = True

    @validator("DATABASE_URL", pre=True)
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if not v:
            raise ValueError("DATABASE_URL is required")
        return v

    @validator("LOG_LEVEL", pre=True)
    def normalize_log_level(cls, v: Optional[str]) -> str:
        return (v or "INFO").upper()

    @validator("SECRET_KEY", pre=True)
    def validate_secret_key(cls, v: Optional[str]) -> str:
        if not v or len(v) < 32:
            return secrets.token_urlsafe(32)
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
