from pydantic_settings.main import SettingsConfigDict
from typing import Annotated
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode


def split_list(v):
    if isinstance(v, str):
        items = [item.strip() for item in v.strip("[]").split(",")]
        # Remove empty strings
        items = [item for item in items if item]
        return items
    return v


class Settings(BaseSettings):
    """Signaling server settings with environment variable support"""

    # Server settings
    server_host: str = Field(default="0.0.0.0", alias="SERVER_HOST")
    server_port: int = Field(default=3000, alias="SERVER_PORT")

    # CORS settings
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(
        default=["http://localhost:3000"], alias="CORS_ALLOW_ORIGINS"
    )

    # Static assets served next to the signaling endpoint
    static_dir: Path = Field(default=Path("public"), alias="STATIC_DIR")

    # Relay limits
    message_buffer_size: int = Field(default=256, alias="MESSAGE_BUFFER_SIZE")
    max_file_bytes: int = Field(default=5 * 1024 * 1024, alias="MAX_FILE_BYTES")

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def split_origins(cls, v):
        return split_list(v)

    def model_post_init(self, __context):
        if not self.cors_allow_origins:
            raise ValueError(
                "Missing required environment variable: CORS_ALLOW_ORIGINS"
            )

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", frozen=True
    )


class ClientSettings(BaseSettings):
    """Peer client settings"""

    signaling_url: str = Field(
        default="ws://localhost:3000/ws", alias="SIGNALING_URL"
    )

    ice_servers: Annotated[list[str], NoDecode] = Field(
        default=["stun:stun.l.google.com:19302", "stun:stun1.l.google.com:19302"],
        alias="ICE_SERVERS",
    )

    # Connection-quality sampling period
    stats_interval_secs: float = Field(default=3.0, gt=0, alias="STATS_INTERVAL_SECS")

    @field_validator("ice_servers", mode="before")
    @classmethod
    def split_ice_servers(cls, v):
        return split_list(v)

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", frozen=True
    )
