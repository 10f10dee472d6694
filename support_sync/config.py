# support_sync/config.py
from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    PROJECT_NAME: str = "Support Sync"
    API_BASE_URL: str = "http://localhost:8001/api"
    REQUEST_TIMEOUT: float = 30.0
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    ROOM_POLL_INTERVAL: float = 5.0
    MESSAGE_POLL_INTERVAL: float = 2.0
    NOTIFICATION_POLL_INTERVAL: float = 5.0
    MESSAGE_PAGE_SIZE: int = 50
    MAX_VISIBLE_TOASTS: int = 3
    PLACEHOLDER_MATCH_WINDOW: float = 30.0
    RECONNECT_INITIAL_DELAY: float = 1.0
    RECONNECT_MAX_DELAY: float = 30.0
    READ_IMPLIES_DISMISSED: bool = True
    KEYRING_SERVICE: str = "support-sync"
    CHAT_ENABLED: bool = True
    NOTIFICATIONS_ENABLED: bool = True
    REALTIME_ENABLED: bool = True

    model_config = SettingsConfigDict(env_file=".env", extra="allow")


class FeatureConfig(BaseModel):
    """Feature switches that can be changed while a session is running."""

    chat_enabled: bool = True
    notifications_enabled: bool = True
    realtime_enabled: bool = True
    room_poll_interval: float = 5.0
    message_poll_interval: float = 2.0
    notification_poll_interval: float = 5.0

    @classmethod
    def from_app_config(cls, config: AppConfig) -> "FeatureConfig":
        return cls(
            chat_enabled=config.CHAT_ENABLED,
            notifications_enabled=config.NOTIFICATIONS_ENABLED,
            realtime_enabled=config.REALTIME_ENABLED,
            room_poll_interval=config.ROOM_POLL_INTERVAL,
            message_poll_interval=config.MESSAGE_POLL_INTERVAL,
            notification_poll_interval=config.NOTIFICATION_POLL_INTERVAL,
        )
