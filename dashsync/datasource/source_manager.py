"""
Source registry - loads source descriptors from YAML (or JSON) config.

Config shape:

    version: "1.0"
    defaults:
      ttl_seconds: 3600
    sources:
      - id: goodshepherd
        local_snapshot_template: data/goodshepherd/{key}.json
        remote_endpoint_template: https://example.org/data/{key}.json
        keys: [gaza-casualties, home-demolitions]
"""

import json
from pathlib import Path
from typing import Any, Iterable

import yaml
from loguru import logger
from pydantic import BaseModel, Field

from dashsync.datasource.base import SourceDescriptor


class SourceConfig(BaseModel):
    """Whole config file."""

    version: str = "1.0"
    defaults: dict[str, Any] = Field(default_factory=dict)
    sources: list[dict[str, Any]] = Field(default_factory=list)


class SourceRegistry:
    """Immutable-per-load set of descriptors with a key -> source index."""

    def __init__(
        self,
        descriptors: Iterable[SourceDescriptor] = (),
        config_path: str | Path | None = None,
    ):
        self.config_path = Path(config_path) if config_path else None
        self._sources: dict[str, SourceDescriptor] = {}
        self._key_index: dict[str, str] = {}
        if self.config_path is not None:
            self._load_config()
        else:
            self._install(list(descriptors))

    @classmethod
    def from_file(cls, config_path: str | Path) -> "SourceRegistry":
        return cls(config_path=config_path)

    def _load_config(self) -> None:
        """Load YAML or JSON; a missing file yields an empty registry."""
        if not self.config_path.exists():
            logger.warning(f"Source config not found: {self.config_path}, no sources")
            self._install([])
            return

        with open(self.config_path, "r", encoding="utf-8") as f:
            if self.config_path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f) or {}

        config = SourceConfig(**data)
        descriptors = [
            SourceDescriptor(**{**config.defaults, **raw}) for raw in config.sources
        ]
        self._install(descriptors)
        logger.info(
            f"Loaded {len(descriptors)} sources from {self.config_path} "
            f"(config version {config.version})"
        )

    def _install(self, descriptors: list[SourceDescriptor]) -> None:
        sources: dict[str, SourceDescriptor] = {}
        key_index: dict[str, str] = {}
        for descriptor in descriptors:
            if descriptor.id in sources:
                raise ValueError(f"Duplicate source id: {descriptor.id}")
            for key in descriptor.keys:
                if key in key_index:
                    raise ValueError(
                        f"Key '{key}' served by both '{key_index[key]}' "
                        f"and '{descriptor.id}'"
                    )
                key_index[key] = descriptor.id
            sources[descriptor.id] = descriptor
        self._sources = sources
        self._key_index = key_index

    def get(self, source_id: str) -> SourceDescriptor:
        """Raises KeyError for unknown ids."""
        try:
            return self._sources[source_id]
        except KeyError:
            raise KeyError(f"Unknown source: {source_id}") from None

    def source_for_key(self, key: str) -> SourceDescriptor | None:
        source_id = self._key_index.get(key)
        return self._sources[source_id] if source_id else None

    def get_enabled(self) -> list[SourceDescriptor]:
        return [d for d in self._sources.values() if d.enabled]

    def ids(self) -> list[str]:
        return list(self._sources)

    def reload(self) -> None:
        """Re-read the config file (no-op for in-memory registries)."""
        if self.config_path is None:
            return
        logger.info("Reloading source configuration...")
        self._load_config()

    def __len__(self) -> int:
        return len(self._sources)

    def __contains__(self, source_id: object) -> bool:
        return source_id in self._sources

    def get_status(self) -> dict[str, Any]:
        enabled = self.get_enabled()
        return {
            "config_path": str(self.config_path) if self.config_path else None,
            "total_sources": len(self._sources),
            "enabled_sources": len(enabled),
            "keys": sorted(self._key_index),
        }
