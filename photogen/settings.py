from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Tracker and sandbox settings, read from PHOTOGEN_* environment variables."""

    PROJECT_NAME: str = "photogen-tracker"

    # Generation service
    API_URL: str = "http://localhost:5031"
    API_TOKEN: str = ""
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # Push channel (Socket.IO); empty SOCKET_URL falls back to API_URL
    PUSH_ENABLED: bool = True
    SOCKET_URL: str = ""
    SOCKET_NAMESPACE: str = "/generations"
    SOCKET_CONNECT_TIMEOUT_SECONDS: float = 5.0
    ITEM_EVENT: str = "visual_completed"
    PROGRESS_EVENT: str = "generation_progress"
    COMPLETE_EVENT: str = "generation_complete"

    # Reconnect policy: initial attempt + RECONNECT_ATTEMPTS retries
    RECONNECT_ATTEMPTS: int = 5
    RECONNECT_BASE_DELAY_SECONDS: float = 1.0
    RECONNECT_MAX_DELAY_SECONDS: float = 30.0

    # Observation
    POLL_INTERVAL_SECONDS: float = 2.0
    JOB_TIMEOUT_SECONDS: float = 600.0
    RETRY_TIMEOUT_SECONDS: float = 60.0

    # Sandbox service
    SANDBOX_STEP_SECONDS: float = 1.0
    SANDBOX_FAIL_TYPES: list[str] = []
    SANDBOX_TOKEN: str = ""

    model_config = SettingsConfigDict(env_prefix="PHOTOGEN_", env_file=".env", extra="ignore")

    @property
    def socket_url(self) -> str:
        return self.SOCKET_URL or self.API_URL


settings = Settings()
