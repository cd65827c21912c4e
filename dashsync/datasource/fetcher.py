"""
SourceFetcher - resolve one dataset, local snapshot first, remote second.

Local snapshots are pre-generated and already validated, so they are the
common path. A missing or unreadable snapshot falls back to the remote
endpoint; only the remote outcome can fail the fetch.
"""

import json
from typing import Any

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from dashsync.datasource.base import SnapshotMetadata, SourceDescriptor
from dashsync.datastore.blobstore import BlobStore
from dashsync.services.client import HttpClient
from dashsync.services.errors import (
    FetchError,
    NotFoundError,
    ParseError,
    ValidationError,
)
from dashsync.utils import render_template


def parse_payload(raw: bytes, descriptor: SourceDescriptor, key: str) -> Any:
    """
    Decode and validate a payload.

    Raises:
        ParseError: Not JSON
        ValidationError: JSON, but not an object/array or a bad envelope
    """
    try:
        payload = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ParseError(
            f"Malformed JSON for {descriptor.id}/{key}: {e}",
            source_id=descriptor.id,
            key=key,
        ) from e

    if not isinstance(payload, (dict, list)):
        raise ValidationError(
            f"Expected a JSON object or array for {descriptor.id}/{key}, "
            f"got {type(payload).__name__}",
            source_id=descriptor.id,
            key=key,
        )

    has_envelope = isinstance(payload, dict) and "metadata" in payload
    if descriptor.require_envelope and not has_envelope:
        raise ValidationError(
            f"Missing metadata envelope for {descriptor.id}/{key}",
            source_id=descriptor.id,
            key=key,
        )
    if has_envelope:
        try:
            SnapshotMetadata.model_validate(payload["metadata"])
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid metadata envelope for {descriptor.id}/{key}: "
                f"{e.error_count()} error(s)",
                source_id=descriptor.id,
                key=key,
            ) from e
        if descriptor.require_envelope and not isinstance(payload.get("data"), list):
            raise ValidationError(
                f"Envelope for {descriptor.id}/{key} has no data list",
                source_id=descriptor.id,
                key=key,
            )

    return payload


class SourceFetcher:
    """
    Usage:
        fetcher = SourceFetcher(FileBlobStore("public"), HttpClient())
        payload = await fetcher.fetch(descriptor, "gaza-casualties")
    """

    def __init__(self, blob_store: BlobStore, http_client: HttpClient):
        self.blob_store = blob_store
        self.http_client = http_client

    async def fetch(self, descriptor: SourceDescriptor, key: str) -> Any:
        local = await self.fetch_local(descriptor, key)
        if local is not None:
            return local
        return await self.fetch_remote(descriptor, key)

    async def fetch_local(self, descriptor: SourceDescriptor, key: str) -> Any | None:
        """Return the parsed local snapshot, or None when absent or unusable."""
        if not descriptor.local_snapshot_template:
            return None

        path = render_template(descriptor.local_snapshot_template, descriptor.id, key)
        try:
            raw = await self.blob_store.read(path)
        except (OSError, ValueError) as e:
            logger.warning(f"{descriptor.id}/{key}: cannot read snapshot {path}: {e}")
            return None

        if raw is None:
            logger.debug(f"{descriptor.id}/{key}: no local snapshot at {path}")
            return None

        try:
            payload = parse_payload(raw, descriptor, key)
        except FetchError as e:
            logger.warning(f"{descriptor.id}/{key}: unusable local snapshot: {e}")
            return None

        logger.debug(f"{descriptor.id}/{key}: served from local snapshot {path}")
        return payload

    async def fetch_remote(self, descriptor: SourceDescriptor, key: str) -> Any:
        if not descriptor.remote_endpoint_template:
            raise NotFoundError(
                f"No local snapshot and no remote endpoint for {descriptor.id}/{key}",
                source_id=descriptor.id,
                key=key,
            )

        url = render_template(descriptor.remote_endpoint_template, descriptor.id, key)
        logger.debug(f"{descriptor.id}/{key}: fetching remote {url}")
        raw = await self.http_client.get(url, source_id=descriptor.id, key=key)
        return parse_payload(raw, descriptor, key)
