"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".order_workflow" / "ow.db")
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    workload_max_age: float = 60.0
    reload_interval: float = 120.0
    dedupe_window: float = 30.0
    event_queue_size: int = 1000
    read_retries: int = 3
    retry_delay: float = 1.0
    actor: str | None = None
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("OW_DB_PATH"):
            config.db_path = Path(db)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("OW_SLACK_CHANNEL")

        if max_age := os.environ.get("OW_WORKLOAD_MAX_AGE"):
            config.workload_max_age = float(max_age)

        if interval := os.environ.get("OW_RELOAD_INTERVAL"):
            config.reload_interval = float(interval)

        if window := os.environ.get("OW_DEDUPE_WINDOW"):
            config.dedupe_window = float(window)

        if size := os.environ.get("OW_EVENT_QUEUE_SIZE"):
            config.event_queue_size = int(size)

        if retries := os.environ.get("OW_READ_RETRIES"):
            config.read_retries = int(retries)

        if delay := os.environ.get("OW_RETRY_DELAY"):
            config.retry_delay = float(delay)

        config.actor = os.environ.get("OW_ACTOR")

        if level := os.environ.get("OW_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
