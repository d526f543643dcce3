"""Configuration and settings management."""

from __future__ import annotations

import json
import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CONFIG_FILENAME = "config.json"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: Any) -> timedelta:
    """Parse a duration given as seconds or as a Go-style string ("1h30m", "100ms")."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration: {value!r}")

    text = value.strip()
    if not text:
        raise ValueError("empty duration")
    try:
        return timedelta(seconds=float(text))
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return timedelta(seconds=total)


def strip_json_comments(text: str) -> str:
    """Remove // line comments that are outside of string literals."""
    out: list[str] = []
    in_string = False
    escaped = False
    i = 0
    while i < len(text):
        ch = text[i]
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            i += 1
            continue

        if ch == '"':
            in_string = True
        elif ch == "/" and text.startswith("//", i):
            while i < len(text) and text[i] != "\n":
                i += 1
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def load_jsonc(path: Path) -> dict[str, Any]:
    """Read a JSON-with-comments file into a dict."""
    data = json.loads(strip_json_comments(path.read_text(encoding="utf-8")))
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object")
    return data


class Settings(BaseSettings):
    """Orchestrator settings loaded from environment and MACHINATOR_DIR/config.json."""

    model_config = SettingsConfigDict(
        env_prefix="MACHINATOR_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Base directory; MACHINATOR_DIR
    dir: Path = Path(os.path.expanduser("~/.machinator"))

    # Selected project id (auto-selected when only one exists)
    project: Optional[str] = None

    # Agents created on first run
    default_agent_count: int = 3

    # Timeouts (enforced by the agent watcher)
    idle_timeout: timedelta = timedelta(minutes=10)
    max_runtime: timedelta = timedelta(minutes=30)

    # Loop intervals
    assigner_interval: timedelta = timedelta(seconds=1)
    quota_refresh_interval: timedelta = timedelta(seconds=60)
    agent_watch_interval: timedelta = timedelta(milliseconds=100)
    provision_interval: timedelta = timedelta(seconds=1)
    provision_backoff: timedelta = timedelta(seconds=30)

    # External capabilities
    quota_binary: Optional[Path] = None
    quota_timeout: timedelta = timedelta(seconds=60)
    git_timeout: timedelta = timedelta(seconds=300)

    # Logging
    log_format: str = "console"
    debug: bool = False

    @field_validator(
        "idle_timeout",
        "max_runtime",
        "assigner_interval",
        "quota_refresh_interval",
        "agent_watch_interval",
        "provision_interval",
        "provision_backoff",
        "quota_timeout",
        "git_timeout",
        mode="before",
    )
    @classmethod
    def _parse_duration(cls, value: Any) -> timedelta:
        return parse_duration(value)

    @field_validator("default_agent_count")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("default_agent_count must be >= 0")
        return value

    @model_validator(mode="after")
    def _default_quota_binary(self) -> "Settings":
        self.dir = self.dir.expanduser()
        if self.quota_binary is None:
            self.quota_binary = self.dir / "gemini"
        return self

    @property
    def state_path(self) -> Path:
        return self.dir / "state.json"

    @property
    def accounts_dir(self) -> Path:
        return self.dir / "accounts"

    @property
    def projects_dir(self) -> Path:
        return self.dir / "projects"

    @property
    def config_path(self) -> Path:
        return self.dir / CONFIG_FILENAME

    @property
    def metrics_path(self) -> Path:
        return self.dir / "metrics.prom"

    @property
    def logs_dir(self) -> Path:
        return self.dir / "logs"


def _flatten_file_config(data: dict[str, Any]) -> dict[str, Any]:
    """Map the nested config.json layout onto flat Settings fields."""
    flat: dict[str, Any] = {}
    if "default_agent_count" in data:
        flat["default_agent_count"] = data["default_agent_count"]

    timeouts = data.get("timeouts") or {}
    if "idle" in timeouts:
        flat["idle_timeout"] = timeouts["idle"]
    if "max_runtime" in timeouts:
        flat["max_runtime"] = timeouts["max_runtime"]

    intervals = data.get("intervals") or {}
    for key in ("assigner", "quota_refresh", "agent_watch", "provision"):
        if key in intervals:
            flat[f"{key}_interval"] = intervals[key]

    for key in ("provision_backoff", "quota_timeout", "git_timeout", "project", "log_format"):
        if key in data:
            flat[key] = data[key]
    return flat


def load_settings(**overrides: Any) -> Settings:
    """Build settings from env, then layer config.json and explicit overrides on top.

    Raises:
        ValueError: If config.json exists but cannot be parsed
    """
    base = Settings(**overrides)
    config_path = base.config_path
    if not config_path.exists():
        return base

    try:
        file_values = _flatten_file_config(load_jsonc(config_path))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValueError(f"failed to read {config_path}: {exc}") from exc

    return Settings(**{**file_values, **overrides, "dir": base.dir})


def config_template() -> str:
    """Return a documented config.json template."""
    return """{
  // Number of agents created on first run (before any agents exist).
  "default_agent_count": 3,

  // Timeout settings (durations like "10m", "1h", "90s")
  "timeouts": {
    "idle": "10m",
    "max_runtime": "30m"
  },

  // Loop intervals
  "intervals": {
    "assigner": "1s",
    "quota_refresh": "60s",
    "agent_watch": "100ms",
    "provision": "1s"
  },

  // Wait this long before retrying a failed clone/worktree
  "provision_backoff": "30s"
}
"""


def ensure_config_template(settings: Settings) -> Path:
    """Create config.json from the template if it does not exist yet."""
    settings.dir.mkdir(parents=True, exist_ok=True)
    path = settings.config_path
    if not path.exists():
        path.write_text(config_template(), encoding="utf-8")
    return path
