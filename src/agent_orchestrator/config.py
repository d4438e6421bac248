"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

TRUTHY = {"1", "true", "yes", "on"}


def parse_bool(value: str | None) -> bool:
    if not value:
        return False
    return value.strip().lower() in TRUTHY


def parse_positive_int(value: str | None, fallback: int) -> int:
    if not value:
        return fallback
    try:
        parsed = int(value, 10)
    except ValueError:
        return fallback
    return parsed if parsed >= 1 else fallback


@dataclass
class Config:
    home: Path = field(default_factory=lambda: Path.cwd())
    workers_file: Path | None = None
    activity_log_file: Path | None = None
    state_file: Path | None = None
    codex_cmd: str = "codex"
    integration_target_branch: str = "main"
    auto_claim: bool = False
    auto_claim_interval_ms: int = 5000
    max_doing_per_agent: int = 1
    auto_execute: bool = False
    auto_execute_interval_ms: int = 5000
    auto_execute_timeout_ms: int = 20 * 60 * 1000
    auto_verify: bool = False
    auto_accept: bool = False
    heartbeat_interval_ms: int = 10000

    def __post_init__(self):
        if self.workers_file is None:
            self.workers_file = self.home / "settings" / "workers.yaml"
        if self.activity_log_file is None:
            self.activity_log_file = self.home / "logs" / "activity.ndjson"
        if self.state_file is None:
            self.state_file = self.home / "logs" / "state.json"

    def resolve(self, value: str) -> Path:
        """Resolve a possibly relative path against the configured home."""
        path = Path(value)
        return path if path.is_absolute() else self.home / path

    @classmethod
    def from_env(cls) -> "Config":
        home = Path(os.environ.get("AO_HOME") or Path.cwd())
        config = cls(home=home)

        if workers := os.environ.get("AO_WORKERS_FILE"):
            config.workers_file = config.resolve(workers)

        if activity := os.environ.get("AO_ACTIVITY_LOG_FILE"):
            config.activity_log_file = config.resolve(activity)

        if state := os.environ.get("AO_STATE_FILE"):
            config.state_file = config.resolve(state)

        if codex := os.environ.get("CODEX_CMD"):
            config.codex_cmd = codex

        if target := os.environ.get("AO_INTEGRATION_TARGET_BRANCH"):
            config.integration_target_branch = target

        config.auto_claim = parse_bool(os.environ.get("AO_AUTO_CLAIM"))
        config.auto_claim_interval_ms = parse_positive_int(
            os.environ.get("AO_AUTO_CLAIM_INTERVAL_MS"), config.auto_claim_interval_ms
        )
        config.max_doing_per_agent = parse_positive_int(
            os.environ.get("AO_AUTO_CLAIM_MAX_DOING_PER_AGENT"), config.max_doing_per_agent
        )

        config.auto_execute = parse_bool(os.environ.get("AO_AUTO_EXECUTE"))
        config.auto_execute_interval_ms = parse_positive_int(
            os.environ.get("AO_AUTO_EXECUTE_INTERVAL_MS"), config.auto_execute_interval_ms
        )
        config.auto_execute_timeout_ms = parse_positive_int(
            os.environ.get("AO_AUTO_EXECUTE_TIMEOUT_MS"), config.auto_execute_timeout_ms
        )
        config.auto_verify = parse_bool(os.environ.get("AO_AUTO_VERIFY_ON_EXECUTE"))
        config.auto_accept = parse_bool(os.environ.get("AO_AUTO_ACCEPT_ON_EXECUTE"))
        config.heartbeat_interval_ms = parse_positive_int(
            os.environ.get("AO_HEARTBEAT_INTERVAL_MS"), config.heartbeat_interval_ms
        )

        return config


def get_config() -> Config:
    return Config.from_env()
