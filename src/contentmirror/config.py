"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (CONTENTMIRROR__API__TOKEN=secret_...)
  2. contentmirror.yaml     (searched in cwd, then platform config dir)
  3. Hardcoded defaults

The config file is optional; only the API token and collection ID have no
usable default.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_CACHE_DIR = platformdirs.user_cache_dir("contentmirror")
_DEFAULT_DB_PATH = str(Path(_DEFAULT_CACHE_DIR) / "cache.db")

HierarchyMode = Literal["none", "relation", "subpage", "both"]


def _find_config_file() -> str | None:
    """Return the path of the first contentmirror.yaml found, or None."""
    candidates = [
        Path("contentmirror.yaml"),
        Path(platformdirs.user_config_dir("contentmirror")) / "contentmirror.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class ApiSettings(BaseModel):
    base_url: str = "https://api.notion.com"
    token: str = ""
    version: str = "2022-06-28"
    timeout_seconds: float = 30.0
    page_size: int = 100


class SourceSettings(BaseModel):
    collection_id: str = ""
    only_published: bool = True


class CacheSettings(BaseModel):
    enabled: bool = True
    db_path: str = _DEFAULT_DB_PATH


class HierarchySettings(BaseModel):
    mode: HierarchyMode = "none"
    relation_property: str = "Parent"


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "text"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: CONTENTMIRROR__CACHE__ENABLED=false
        env_prefix="CONTENTMIRROR__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    api: ApiSettings = ApiSettings()
    source: SourceSettings = SourceSettings()
    cache: CacheSettings = CacheSettings()
    hierarchy: HierarchySettings = HierarchySettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
