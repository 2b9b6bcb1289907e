"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    api_base: str = "http://localhost:3000/api"
    token: str | None = None
    user_id: str | None = None
    user_name: str | None = None
    user_phone: str | None = None
    role: str | None = None
    db_path: Path = field(default_factory=lambda: Path.home() / ".solar_ops" / "sops.db")
    upload_dir: Path = field(default_factory=lambda: Path.home() / ".solar_ops" / "uploads")
    work_types_path: Path | None = None
    http_timeout: float = 30.0
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if base := os.environ.get("SOPS_API_BASE"):
            config.api_base = base.rstrip("/")

        config.token = os.environ.get("SOPS_TOKEN")
        config.user_id = os.environ.get("SOPS_USER_ID")
        config.user_name = os.environ.get("SOPS_USER_NAME")
        config.user_phone = os.environ.get("SOPS_USER_PHONE")
        config.role = os.environ.get("SOPS_ROLE")

        if db := os.environ.get("SOPS_DB_PATH"):
            config.db_path = Path(db)

        if uploads := os.environ.get("SOPS_UPLOAD_DIR"):
            config.upload_dir = Path(uploads)

        if work_types := os.environ.get("SOPS_WORK_TYPES"):
            config.work_types_path = Path(work_types)

        if timeout := os.environ.get("SOPS_HTTP_TIMEOUT"):
            config.http_timeout = float(timeout)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("SOPS_SLACK_CHANNEL")

        if level := os.environ.get("SOPS_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
