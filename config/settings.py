"""
Configuration loader for the Slack message scheduler.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class SlackConfig:
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    api_base_url: str = "https://slack.com/api"
    timeout_s: float = 30.0


@dataclass
class SchedulerConfig:
    enabled: bool = True
    interval_seconds: float = 60.0      # tick period
    concurrency: int = 5                # max concurrent deliveries per tick
    shutdown_grace_seconds: float = 10.0


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./slack_scheduler.db"      # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                    # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                   # directory for file backend


@dataclass
class Settings:
    app_name: str = "SlackScheduler"
    debug: bool = False
    max_message_length: int = 4000
    slack: SlackConfig = field(default_factory=SlackConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _slack_from_env(slack: SlackConfig) -> SlackConfig:
    """Fill OAuth credentials left blank in YAML from the environment."""
    slack.client_id = slack.client_id or os.environ.get("SLACK_CLIENT_ID", "")
    slack.client_secret = slack.client_secret or os.environ.get("SLACK_CLIENT_SECRET", "")
    slack.redirect_uri = slack.redirect_uri or os.environ.get("SLACK_REDIRECT_URI", "")
    return slack


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "SCHEDULER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.max_message_length = raw.get("max_message_length", settings.max_message_length)

        if "slack" in raw:
            sl = raw["slack"]
            settings.slack = SlackConfig(
                client_id=sl.get("client_id", ""),
                client_secret=sl.get("client_secret", ""),
                redirect_uri=sl.get("redirect_uri", ""),
                api_base_url=sl.get("api_base_url", settings.slack.api_base_url),
                timeout_s=sl.get("timeout_s", settings.slack.timeout_s),
            )

        if "scheduler" in raw:
            sc = raw["scheduler"]
            settings.scheduler = SchedulerConfig(
                enabled=sc.get("enabled", True),
                interval_seconds=sc.get("interval_seconds", 60.0),
                concurrency=sc.get("concurrency", 5),
                shutdown_grace_seconds=sc.get("shutdown_grace_seconds", 10.0),
            )

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
            )

    settings.slack = _slack_from_env(settings.slack)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
