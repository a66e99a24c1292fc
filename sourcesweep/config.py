from __future__ import annotations

import argparse
import sys
import tomllib
from pathlib import Path
from typing import Any, Dict

from pydantic import BaseModel, Field


DEFAULT_EXCLUDED_LOG_SOURCES = [
    "Open Collector",
    "Echo",
    "AI Engine",
    "LogRhythm System",
]


class InventorySettings(BaseModel):
    hostname: str = "localhost"
    port: int = 8501
    api_key: str = ""
    verify_tls: bool = False
    timeout: float = 30.0
    page_size: int = 1000


class AnalysisSettings(BaseModel):
    excluded_log_sources: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDED_LOG_SOURCES)
    )
    retirement_marker: str = "Retired by SourceSweep"


class ProbeSettings(BaseModel):
    ports: list[int] = Field(default_factory=lambda: [443, 80, 22, 3389])
    timeout: float = 0.5
    max_concurrent: int = 50


class RollbackSettings(BaseModel):
    enabled: bool = True
    retention_days: int = 30
    max_rollback_points: int = 10
    auto_backup: bool = True
    backup_location: str = "./rollback/"
    checksum_algorithm: str = "sha256"


class WebSettings(BaseModel):
    api_key: str = ""
    host: str = "127.0.0.1"
    port: int = 8080


class Settings(BaseModel):
    inventory: InventorySettings = Field(default_factory=InventorySettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    probe: ProbeSettings = Field(default_factory=ProbeSettings)
    rollback: RollbackSettings = Field(default_factory=RollbackSettings)
    web: WebSettings = Field(default_factory=WebSettings)

    def redacted(self) -> Dict[str, Any]:
        """Settings as a plain dict with secrets masked."""
        data = self.model_dump()
        for section in ("inventory", "web"):
            if data[section].get("api_key"):
                data[section]["api_key"] = "********"
        return data


def load_config() -> Dict[str, Any]:
    """
    Load configuration from:
    1. ~/.sourcesweep.toml
    2. ./sourcesweep.toml

    Later files override earlier ones; nested tables are merged.
    """
    paths = [
        Path.home() / ".sourcesweep.toml",
        Path("sourcesweep.toml"),
    ]

    config: Dict[str, Any] = {}
    for path in paths:
        if path.exists():
            try:
                with path.open("rb") as f:
                    data = tomllib.load(f)
                    _deep_update(config, data)
            except (OSError, tomllib.TOMLDecodeError) as e:
                print(f"warning: failed to load config {path}: {e}", file=sys.stderr)

    return config


def load_settings() -> Settings:
    return Settings.model_validate(load_config())


def _deep_update(target: Dict[str, Any], source: Dict[str, Any]) -> None:
    for key, value in source.items():
        if isinstance(value, dict) and key in target and isinstance(target[key], dict):
            _deep_update(target[key], value)
        else:
            target[key] = value


def apply_config(parser: argparse.ArgumentParser, config: Dict[str, Any]) -> None:
    """
    Apply the ``[web]`` section to the argument parser defaults.

    Example config:
    [web]
    host = "0.0.0.0"
    port = 9000
    """
    web = config.get("web")
    if not isinstance(web, dict):
        return
    defaults = {key: web[key] for key in ("host", "port") if key in web}
    parser.set_defaults(**defaults)
    # argparse does not push set_defaults down into subparsers
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            for subparser in action.choices.values():
                subparser.set_defaults(**defaults)
