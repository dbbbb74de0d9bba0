"""Board associations and application settings for nodemonitor."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

import click

DEFAULT_BAUD_RATE = 115200
CONFIG_ENV_VAR = "NODEMONITOR_CONFIG"


class ConfigError(Exception):
    """The configuration file exists but cannot be used."""


@dataclass
class BoardAssociation:
    id: str
    board_type: str = ""
    port: str | None = None
    baud_rate: int = DEFAULT_BAUD_RATE
    project_path: str | None = None
    environment: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> BoardAssociation:
        return cls(
            id=str(data.get("id", "")),
            board_type=data.get("board_type") or "",
            port=data.get("port") or None,
            baud_rate=int(data.get("baud_rate") or DEFAULT_BAUD_RATE),
            project_path=data.get("project_path") or None,
            environment=data.get("environment") or None,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AppConfig:
    tool_path: str | None = None
    boards: list[BoardAssociation] = field(default_factory=list)
    recent_projects: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> AppConfig:
        return cls(
            tool_path=data.get("tool_path") or None,
            boards=[BoardAssociation.from_dict(b) for b in data.get("boards", []) if isinstance(b, dict)],
            recent_projects=[str(p) for p in data.get("recent_projects", [])],
        )

    def to_dict(self) -> dict:
        return {
            "tool_path": self.tool_path,
            "boards": [b.to_dict() for b in self.boards],
            "recent_projects": list(self.recent_projects),
        }


def default_config_path() -> Path:
    """Return the config path: $NODEMONITOR_CONFIG or the per-user app dir."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override)
    return Path(click.get_app_dir("nodemonitor")) / "config.json"


def load_app_config(path: Path | str | None = None) -> AppConfig:
    """Read the config file. A missing file yields an empty config."""
    path = Path(path) if path is not None else default_config_path()
    if not path.exists():
        return AppConfig()
    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Cannot read {path}: expected a JSON object")
    return AppConfig.from_dict(data)


def save_app_config(config: AppConfig, path: Path | str | None = None) -> Path:
    """Write the config file, creating its directory."""
    path = Path(path) if path is not None else default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_dict(), indent=2) + "\n")
    return path


def find_board(config: AppConfig, board_id: str) -> BoardAssociation | None:
    for board in config.boards:
        if board.id == board_id:
            return board
    return None


def remember_project(config: AppConfig, project_path: str, limit: int = 10) -> None:
    """Move ``project_path`` to the front of the recent projects list."""
    if project_path in config.recent_projects:
        config.recent_projects.remove(project_path)
    config.recent_projects.insert(0, project_path)
    del config.recent_projects[limit:]


# Keys settable through ``nodemonitor config``.
SETTABLE_KEYS = ("tool_path",)


def get_config_value(config: AppConfig, key: str):
    if key not in SETTABLE_KEYS:
        raise ConfigError(f"Unknown key: {key}. Available: {', '.join(SETTABLE_KEYS)}")
    return getattr(config, key)


def set_config_value(config: AppConfig, key: str, value: str | None) -> None:
    if key not in SETTABLE_KEYS:
        raise ConfigError(f"Unknown key: {key}. Available: {', '.join(SETTABLE_KEYS)}")
    setattr(config, key, value or None)
