from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from dashsync.datasource.base import SourceDescriptor
from dashsync.datasource.scheduler import RefreshConfig
from dashsync.datasource.source_manager import SourceRegistry
from dashsync.datastore.blobstore import MemoryBlobStore
from dashsync.services.client import HttpClient
from dashsync.sync import DataSyncService

LOCAL = "data/{source}/{key}.json"
REMOTE = "https://remote.test/{source}/{key}.json"


def local_path(source: str, key: str) -> str:
    return LOCAL.format(source=source, key=key)


def remote_url(source: str, key: str) -> str:
    return REMOTE.format(source=source, key=key)


def make_descriptor(source_id: str, **overrides: Any) -> SourceDescriptor:
    fields: dict[str, Any] = {
        "id": source_id,
        "local_snapshot_template": LOCAL,
        "remote_endpoint_template": REMOTE,
        "ttl_seconds": 60,
        "max_retries": 0,
        "backoff_base_ms": 1,
    }
    fields.update(overrides)
    return SourceDescriptor(**fields)


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RemoteStub:
    """Scripted HTTP endpoint for httpx.MockTransport.

    Each route holds a queue of responses; the last one repeats.
    A response is ``(status, body)`` or the string ``"connect_error"``.
    Unknown URLs answer 404.
    """

    def __init__(self) -> None:
        self.routes: dict[str, list[Any]] = {}
        self.calls: list[str] = []

    def respond(self, url: str, *responses: Any) -> None:
        self.routes[url] = list(responses)

    def calls_to(self, url: str) -> int:
        return self.calls.count(url)

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.calls.append(url)
        queue = self.routes.get(url)
        if not queue:
            return httpx.Response(404)
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if item == "connect_error":
            raise httpx.ConnectError("connection refused", request=request)
        status, body = item
        if isinstance(body, (bytes, str)):
            return httpx.Response(status, content=body)
        return httpx.Response(status, json=body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def as_json(payload: Any) -> bytes:
    return json.dumps(payload).encode()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def remote() -> RemoteStub:
    return RemoteStub()


@pytest.fixture
def blobs() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def make_service(clock: FakeClock, remote: RemoteStub, blobs: MemoryBlobStore):
    def _make(
        *descriptors: SourceDescriptor,
        config: RefreshConfig | None = None,
        **kwargs: Any,
    ) -> DataSyncService:
        return DataSyncService(
            registry=SourceRegistry(descriptors),
            blob_store=blobs,
            http_client=HttpClient(transport=remote.transport()),
            config=config or RefreshConfig(jitter_ratio=0.0),
            clock=clock,
            **kwargs,
        )

    return _make
