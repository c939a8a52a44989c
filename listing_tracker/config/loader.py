"""Configuration loading helpers for listing-tracker."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from ..errors import ConfigurationError
from .models import GlobalConfig, PortalConfig

CONFIG_EXTENSIONS = (".yaml", ".yml", ".json")
GLOBAL_CONFIG_FILENAME = "global_config.yaml"
PORTAL_CONFIG_SUFFIX = ".yaml"


def _slugify(name: str) -> str:
    return "".join(ch.lower() if ch.isalnum() else "-" for ch in name).strip("-")


def _read_file(path: Path) -> dict:
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot parse configuration file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file must contain a mapping: {path}")
    return data


def _write_file(path: Path, payload: dict) -> None:
    with path.open("w", encoding="utf-8") as stream:
        if path.suffix in (".yaml", ".yml"):
            yaml.safe_dump(payload, stream, allow_unicode=True, sort_keys=False)
        else:
            json.dump(payload, stream, indent=2, ensure_ascii=False)


@dataclass(slots=True)
class ConfigLocator:
    """Resolve important paths from project root."""

    project_root: Path | None = None
    data_dir: Path | None = None
    portals_dir: Path | None = None
    outputs_dir: Path | None = None
    audit_dir: Path | None = None
    logs_dir: Path | None = None

    def __post_init__(self) -> None:
        env_root = os.environ.get("LISTING_TRACKER_HOME")
        if env_root:
            root = Path(env_root).expanduser().resolve()
        else:
            root = (self.project_root or Path(__file__).resolve().parents[2]).resolve()
        self.project_root = root
        self.data_dir = (root / "data").resolve()
        self.portals_dir = (self.data_dir / "portals").resolve()
        self.outputs_dir = (self.data_dir / "outputs").resolve()
        self.audit_dir = (self.data_dir / "audit").resolve()
        self.logs_dir = (root / "logs").resolve()
        self.ensure_directories()

    def ensure_directories(self) -> None:
        for directory in (
            self.data_dir,
            self.portals_dir,
            self.outputs_dir,
            self.audit_dir,
            self.logs_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    def global_config_path(self) -> Path:
        return self.data_dir / GLOBAL_CONFIG_FILENAME


class ConfigRepository:
    """Repository encapsulating config IO and schema validation."""

    def __init__(self, locator: ConfigLocator | None = None) -> None:
        self.locator = locator or ConfigLocator()
        self._global_cache: GlobalConfig | None = None

    # ------------------------------------------------------------------
    # Global configuration helpers
    # ------------------------------------------------------------------
    def load_global_config(self) -> GlobalConfig:
        if self._global_cache is not None:
            return self._global_cache
        path = self.locator.global_config_path()
        if path.exists():
            global_cfg = _validate(GlobalConfig, _read_file(path), path)
        else:
            global_cfg = GlobalConfig()
            self.save_global_config(global_cfg)
        self._global_cache = global_cfg
        return global_cfg

    def save_global_config(self, config: GlobalConfig) -> None:
        path = self.locator.global_config_path()
        _write_file(path, config.model_dump(mode="json"))
        self._global_cache = config

    def resolve_path(self, path: Path) -> Path:
        """Resolve a configured path against the project root."""

        return self.load_global_config().resolve(path, self.locator.project_root)

    # ------------------------------------------------------------------
    # Portal configuration helpers
    # ------------------------------------------------------------------
    def portal_path(self, portal: str) -> Path:
        return self.locator.portals_dir / f"{_slugify(portal)}{PORTAL_CONFIG_SUFFIX}"

    def list_portal_files(self) -> Iterable[Path]:
        for path in sorted(self.locator.portals_dir.glob("*")):
            if path.is_file() and path.suffix in CONFIG_EXTENSIONS:
                yield path

    def list_portals(self) -> list[PortalConfig]:
        return [self.load_portal(path) for path in self.list_portal_files()]

    def load_portal(self, identifier: str | Path) -> PortalConfig:
        path = identifier if isinstance(identifier, Path) else self.portal_path(identifier)
        if not path.exists():
            raise FileNotFoundError(f"Portal configuration not found: {identifier}")
        return _validate(PortalConfig, _read_file(path), path)

    def save_portal(self, config: PortalConfig) -> Path:
        path = self.portal_path(config.portal)
        _write_file(path, config.model_dump(mode="json", exclude_none=True))
        return path

    def delete_portal(self, portal: str) -> None:
        path = self.portal_path(portal)
        if path.exists():
            path.unlink()


def _validate(model, payload: dict, path: Path):
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration in {path}:\n{exc}") from exc


__all__ = ["ConfigLocator", "ConfigRepository", "CONFIG_EXTENSIONS"]
