"""
Source descriptors and the snapshot envelope.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SourceDescriptor(BaseModel):
    """
    One independent data provider.

    Templates are ``str.format`` strings with ``{source}`` and ``{key}``
    placeholders, e.g. ``data/{source}/{key}/recent.json``.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    local_snapshot_template: str | None = None
    remote_endpoint_template: str | None = None
    ttl_seconds: float = Field(default=3600, gt=0)
    max_retries: int = Field(default=3, ge=0)
    backoff_base_ms: int = Field(default=1000, ge=0)

    keys: tuple[str, ...] = ()
    enabled: bool = True
    name: str = ""
    description: str = ""
    require_envelope: bool = False

    @model_validator(mode="before")
    @classmethod
    def _default_keys(cls, data: Any) -> Any:
        # A source without explicit keys serves one dataset named after itself.
        if isinstance(data, dict) and not data.get("keys") and data.get("id"):
            data = {**data, "keys": (data["id"],)}
        return data

    @model_validator(mode="after")
    def _check_templates(self) -> "SourceDescriptor":
        if not self.local_snapshot_template and not self.remote_endpoint_template:
            raise ValueError(
                f"source '{self.id}' needs a local snapshot or a remote endpoint template"
            )
        return self


class SnapshotMetadata(BaseModel):
    """Envelope metadata shared by local snapshots and remote responses."""

    model_config = ConfigDict(populate_by_name=True)

    source: str
    dataset: str
    record_count: int = Field(ge=0, alias="recordCount")
    last_updated: str = Field(alias="lastUpdated")
