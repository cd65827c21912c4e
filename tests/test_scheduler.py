from __future__ import annotations

import asyncio

import httpx
import pytest

from dashsync.datasource.scheduler import RefreshConfig, SourceState
from dashsync.datasource.source_manager import SourceRegistry
from dashsync.services.client import HttpClient
from dashsync.services.errors import NetworkError
from dashsync.sync import DataSyncService
from tests.conftest import as_json, local_path, make_descriptor, remote_url


async def _eventually(predicate, timeout: float = 1.0) -> None:
    for _ in range(int(timeout / 0.01)):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached in time")


@pytest.mark.asyncio
async def test_tick_only_refreshes_stale_keys(make_service, blobs, clock) -> None:
    blobs.blobs[local_path("a", "k")] = as_json({"v": 1})
    service = make_service(make_descriptor("a", keys=("k",), ttl_seconds=60))

    assert await service.scheduler.tick() == 1
    assert await service.scheduler.tick() == 0
    assert blobs.reads == [local_path("a", "k")]

    clock.advance(61)
    assert await service.scheduler.tick() == 1
    assert len(blobs.reads) == 2


@pytest.mark.asyncio
async def test_one_failing_source_does_not_block_others(make_service, blobs, remote) -> None:
    blobs.blobs[local_path("b", "kb")] = as_json({"b": True})
    remote.respond(remote_url("a", "ka"), (500, "down"))
    service = make_service(
        make_descriptor("a", keys=("ka",)),
        make_descriptor("b", keys=("kb",)),
    )
    updates: list[str] = []
    service.subscribe(lambda e: updates.append(e.key))

    assert await service.scheduler.tick() == 2

    assert service.get_cached_data("kb") == {"b": True}
    errors = service.get_status().errors
    assert [(e.source, e.key) for e in errors] == [("a", "ka")]
    assert errors[0].retryable
    assert updates.count("kb") == 1


@pytest.mark.asyncio
async def test_open_circuit_skips_ticks_but_not_forced_refreshes(make_service, remote) -> None:
    remote.respond(remote_url("a", "k"), (500, "down"))
    service = make_service(
        make_descriptor("a", keys=("k",)),
        config=RefreshConfig(
            jitter_ratio=0.0, circuit_failure_threshold=1, revalidate_on_read=False
        ),
    )

    await service.scheduler.tick()
    assert service.circuits.get_open_circuits() == ["a"]
    assert await service.scheduler.tick() == 0
    assert remote.calls_to(remote_url("a", "k")) == 1

    with pytest.raises(NetworkError):
        await service.force_update(["a"])
    assert remote.calls_to(remote_url("a", "k")) == 2


@pytest.mark.asyncio
async def test_forced_refresh_cuts_backoff_short(make_service, remote) -> None:
    url = remote_url("a", "k")
    remote.respond(url, "connect_error", (200, {"v": 2}))
    service = make_service(
        make_descriptor("a", keys=("k",), max_retries=1, backoff_base_ms=60_000)
    )

    first = asyncio.create_task(service.force_update(["a"]))
    await _eventually(lambda: service.scheduler.state_of("k") is SourceState.BACKOFF)
    assert service.get_status().is_refreshing

    second = await asyncio.wait_for(service.force_update(["a"]), timeout=1)

    assert second == {"k": {"v": 2}}
    assert await first == {"k": {"v": 2}}
    assert remote.calls_to(url) == 2
    assert service.scheduler.state_of("k") is SourceState.IDLE
    assert not service.get_status().is_refreshing


@pytest.mark.asyncio
async def test_offline_pauses_ticks_and_reconnect_wakes(make_service, remote) -> None:
    url = remote_url("a", "k")
    remote.respond(url, (200, {"v": 1}))
    service = make_service(make_descriptor("a", keys=("k",)))

    assert service.set_online(False) is None
    assert await service.scheduler.tick() == 0
    assert remote.calls == []
    assert not service.get_status().online

    task = service.set_online(True)
    assert task is not None
    await task

    assert remote.calls_to(url) == 1
    assert service.get_status().online


@pytest.mark.asyncio
async def test_wake_refreshes_everything_in_background(make_service, remote) -> None:
    remote.respond(remote_url("a", "k"), (200, {"v": 1}))
    service = make_service(make_descriptor("a", keys=("k",)))

    task = service.wake("test")
    assert task is not None
    await task

    assert service.get_cached_data("k") == {"v": 1}


@pytest.mark.asyncio
async def test_reading_a_missing_key_revalidates_in_background(make_service, remote) -> None:
    remote.respond(remote_url("a", "k"), (200, {"v": 1}))
    service = make_service(make_descriptor("a", keys=("k",)))

    assert service.get_cached_data("k") is None
    assert service.get_cached_data("k") is None

    await _eventually(lambda: service.cache.is_fresh("k"))
    assert remote.calls_to(remote_url("a", "k")) == 1


@pytest.mark.asyncio
async def test_runtime_interval_change_reschedules_job(make_service) -> None:
    service = make_service(make_descriptor("a", keys=("k",)))
    await service.init()
    try:
        assert service.scheduler.auto_refresh_active()
        service.update_config(refresh_interval_seconds=10)
        job = service.scheduler.scheduler.get_job(service.scheduler.JOB_ID)
        assert job.trigger.interval.total_seconds() == 10

        service.stop_auto_refresh()
        assert not service.scheduler.auto_refresh_active()
        assert service.get_status().next_refresh is None

        service.start_auto_refresh()
        assert service.scheduler.auto_refresh_active()
    finally:
        await service.dispose()


@pytest.mark.asyncio
async def test_source_in_backoff_does_not_delay_healthy_source(
    make_service, blobs, remote
) -> None:
    remote.respond(remote_url("a", "k1"), (503, "down"))
    remote.respond(remote_url("a", "k2"), (503, "down"))
    blobs.blobs[local_path("b", "kb")] = as_json({"ok": True})
    service = make_service(
        make_descriptor("a", keys=("k1", "k2"), max_retries=2, backoff_base_ms=1000),
        make_descriptor("b", keys=("kb",)),
    )

    task = service.wake("test")
    await _eventually(lambda: service.cache.is_fresh("kb"), timeout=0.5)

    assert service.get_cached_data("kb") == {"ok": True}
    assert service.scheduler.state_of("k1") is SourceState.BACKOFF

    service.retry.cancel_all()
    await task


@pytest.mark.asyncio
async def test_fetches_never_exceed_max_concurrency(blobs, clock) -> None:
    active = 0
    peak = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.02)
        active -= 1
        return httpx.Response(200, json={"path": request.url.path})

    descriptors = [
        make_descriptor(f"s{i}", keys=(f"k{i}",), local_snapshot_template=None)
        for i in range(5)
    ]
    service = DataSyncService(
        registry=SourceRegistry(descriptors),
        blob_store=blobs,
        http_client=HttpClient(transport=httpx.MockTransport(handler)),
        config=RefreshConfig(jitter_ratio=0.0, max_concurrency=2),
        clock=clock,
    )

    payloads = await service.force_update()

    assert len(payloads) == 5
    assert peak == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("bad_response", [(404, ""), (503, "down")])
async def test_one_bad_key_does_not_open_the_source_circuit(
    make_service, blobs, remote, clock, bad_response
) -> None:
    remote.respond(remote_url("a", "bad"), bad_response)
    blobs.blobs[local_path("a", "good")] = as_json({"ok": True})
    service = make_service(
        make_descriptor("a", keys=("bad", "good")),
        config=RefreshConfig(
            jitter_ratio=0.0, circuit_failure_threshold=1, revalidate_on_read=False
        ),
    )

    assert await service.scheduler.tick() == 2
    clock.advance(61)
    assert await service.scheduler.tick() == 2

    assert service.circuits.get_open_circuits() == []
    assert [e.key for e in service.get_status().errors] == ["bad"]


@pytest.mark.asyncio
async def test_dispose_cancels_background_refreshes(make_service, remote) -> None:
    url = remote_url("a", "k")
    remote.respond(url, (503, "down"))
    service = make_service(
        make_descriptor("a", keys=("k",), max_retries=3, backoff_base_ms=60_000)
    )
    await service.init()

    task = service.wake("test")
    await _eventually(lambda: service.scheduler.state_of("k") is SourceState.BACKOFF)
    await service.dispose()

    assert task.done()
    assert service.http_client.closed
    with pytest.raises(NetworkError):
        await service.http_client.get(url)
    assert remote.calls_to(url) == 1
