from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Security
    QTIMER_ADMIN_PASSWORD: str = "change-me"
    QTIMER_SECRET_KEY: str = "dev-secret-change-me"
    QTIMER_TOKEN_MAX_AGE: int = 60 * 60 * 12

    # Database
    QTIMER_DB_URL: str = "sqlite:///./qtimer.db"

    # HTTP
    QTIMER_ALLOWED_ORIGINS: str = "http://localhost:3000"
    QTIMER_LOG_LEVEL: str = "INFO"
    QTIMER_REQUEST_ID_HEADER: str = "X-Request-Id"

    # Uploads
    QTIMER_RACECHECK_EXTENSION: str = ".racecheck"
    QTIMER_MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024

    # Paging
    QTIMER_EVENTS_PAGE_SIZE: int = 20
    QTIMER_PARTICIPANTS_PAGE_SIZE: int = 200
    QTIMER_MAX_PAGE_SIZE: int = 1000

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def allowed_origins(self) -> list[str]:
        return [o.strip() for o in self.QTIMER_ALLOWED_ORIGINS.split(",") if o.strip()]

settings = Settings()


class AgentSettings(BaseSettings):
    # Where the timing software writes its exports
    QTIMER_AGENT_WATCH_DIR: str = "./results"
    # Empty leaves files where they are; re-exports are picked up by hash
    QTIMER_AGENT_COMPLETED_DIR: str = ""
    QTIMER_AGENT_ERROR_DIR: str = ""
    QTIMER_AGENT_STATE_FILE: str = "./qtimer-agent-state.json"

    # Results API
    QTIMER_AGENT_API_URL: str = "http://localhost:8000"
    QTIMER_AGENT_PASSWORD: str = "change-me"
    # 0 uploads by event name, anything else replaces that event's results
    QTIMER_AGENT_EVENT_ID: int = 0

    # Timing
    QTIMER_AGENT_CHECK_INTERVAL: float = 30
    QTIMER_AGENT_HTTP_TIMEOUT: float = 30
    QTIMER_AGENT_MAX_RETRIES: int = 3
    QTIMER_AGENT_RETRY_DELAY: float = 5

    QTIMER_RACECHECK_EXTENSION: str = ".racecheck"
    QTIMER_LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"
