"""Runtime settings for the chat server, loaded from the environment or `.env`."""

from functools import lru_cache
from typing import Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):

    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_db: str = "chat_app"

    jwt_secret_key: SecretStr = SecretStr("change-me")
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24

    # cross-process fan-out is enabled only when a Redis URL is configured
    redis_url: Optional[str] = None
    redis_channel: str = "chat:rooms"

    ws_auth_timeout_seconds: float = 5.0
    ws_send_queue_size: int = 256
    max_message_length: int = 4000
    # deliver message_received to the sender's other open tabs/devices
    echo_to_sender_devices: bool = False

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="CHAT_", env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
