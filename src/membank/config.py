"""Configuration management for membank."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import yaml

from membank.cache import DEFAULT_CACHE_TTL

DEFAULT_CONFIG_PATH = os.path.expanduser("~/.membank/config.yaml")
DEFAULT_DOCS_ROOT = os.path.expanduser("~/.membank/docs")
DEFAULT_PORT = 9300
DEFAULT_LOG_LEVEL = "INFO"


@dataclass
class MembankConfig:
    config_path: str = DEFAULT_CONFIG_PATH
    docs_root: str = DEFAULT_DOCS_ROOT
    port: int = DEFAULT_PORT
    cache_ttl: float = DEFAULT_CACHE_TTL
    watch: bool = False
    log_level: str = DEFAULT_LOG_LEVEL

    def __post_init__(self) -> None:
        if self.cache_ttl < 0:
            raise ValueError(f"cache_ttl must be non-negative, got {self.cache_ttl}")

    @classmethod
    def load(cls, config_path: str = DEFAULT_CONFIG_PATH) -> MembankConfig:
        path = Path(config_path)
        if not path.exists():
            return cls(config_path=config_path)

        with open(path) as f:
            raw = yaml.safe_load(f) or {}

        return cls(
            config_path=config_path,
            docs_root=os.path.expanduser(raw.get("docs_root", DEFAULT_DOCS_ROOT)),
            port=int(raw.get("port", DEFAULT_PORT)),
            cache_ttl=float(raw.get("cache_ttl", DEFAULT_CACHE_TTL)),
            watch=bool(raw.get("watch", False)),
            log_level=str(raw.get("log_level", DEFAULT_LOG_LEVEL)).upper(),
        )

    def save(self) -> None:
        path = Path(self.config_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        raw: dict = {
            "docs_root": self.docs_root,
            "port": self.port,
            "cache_ttl": self.cache_ttl,
            "watch": self.watch,
            "log_level": self.log_level,
        }
        with open(path, "w") as f:
            yaml.dump(raw, f, default_flow_style=False)
