"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

MAX_SESSION_TIMEOUT = 2 * 60 * 60


@dataclass
class Config:
    data_dir: Path = field(default_factory=lambda: Path.home() / ".operator_hub")
    api_url: str = "http://127.0.0.1:8787/api"
    session_backend: str = "claude"
    session_output_dir: Path | None = None
    agent_default_model: str = "sonnet"
    heartbeat_interval: float = 15.0
    task_poll_interval: float = 30.0
    session_poll_interval: float = 15.0
    session_timeout: float = 30 * 60.0
    agent_stale_after: float = 5 * 60.0
    agent_retention: float = 24 * 60 * 60.0
    notification_retention: float = 7 * 24 * 60 * 60.0
    sweep_interval: float = 60.0
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    log_level: str = "INFO"

    def __post_init__(self):
        self.session_timeout = min(self.session_timeout, MAX_SESSION_TIMEOUT)
        if self.session_output_dir is None:
            self.session_output_dir = Path(self.data_dir) / "sessions"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if data_dir := os.environ.get("HUB_DATA_DIR"):
            config.data_dir = Path(data_dir)
            config.session_output_dir = config.data_dir / "sessions"

        if api_url := os.environ.get("HUB_API_URL"):
            config.api_url = api_url.rstrip("/")

        if backend := os.environ.get("HUB_SESSION_BACKEND"):
            if backend not in ("claude", "fake"):
                raise ValueError(f"Unknown session backend: {backend}")
            config.session_backend = backend

        if out_dir := os.environ.get("HUB_SESSION_OUTPUT_DIR"):
            config.session_output_dir = Path(out_dir)

        if model := os.environ.get("HUB_AGENT_DEFAULT_MODEL"):
            config.agent_default_model = model

        for attr, var in (
            ("heartbeat_interval", "HUB_HEARTBEAT_INTERVAL"),
            ("task_poll_interval", "HUB_TASK_POLL_INTERVAL"),
            ("session_poll_interval", "HUB_SESSION_POLL_INTERVAL"),
            ("session_timeout", "HUB_SESSION_TIMEOUT"),
            ("agent_stale_after", "HUB_AGENT_STALE_AFTER"),
            ("agent_retention", "HUB_AGENT_RETENTION"),
            ("notification_retention", "HUB_NOTIFICATION_RETENTION"),
            ("sweep_interval", "HUB_SWEEP_INTERVAL"),
        ):
            if value := os.environ.get(var):
                setattr(config, attr, float(value))
        config.session_timeout = min(config.session_timeout, MAX_SESSION_TIMEOUT)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("HUB_SLACK_CHANNEL")
        config.telegram_bot_token = os.environ.get("TELEGRAM_BOT_TOKEN")
        config.telegram_chat_id = os.environ.get("TELEGRAM_CHAT_ID")

        if level := os.environ.get("HUB_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
