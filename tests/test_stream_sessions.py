from __future__ import annotations

import asyncio

import pytest

from schoolwatch.camera_registry import CameraDescriptor
from schoolwatch.decoder_session import SessionState
from schoolwatch.errors import NetworkError
from schoolwatch.playback_surface import PlaybackSurface
from schoolwatch.stream_sessions import RefreshSchedule, StreamSessionManager


class FakeHandle:
    def __init__(self, address, surface, on_manifest_parsed, on_error):
        self.address = address
        self.surface = surface
        self.on_manifest_parsed = on_manifest_parsed
        self.on_error = on_error
        self.started = False
        self.destroyed = False

    def start(self):
        self.started = True

    async def destroy(self):
        self.destroyed = True


class FakeFactory:
    def __init__(self):
        self.handles: list[FakeHandle] = []

    def __call__(self, address, surface, *, on_manifest_parsed, on_error):
        handle = FakeHandle(address, surface, on_manifest_parsed, on_error)
        self.handles.append(handle)
        return handle

    def for_camera(self, camera_id):
        return [h for h in self.handles if h.surface.camera_id == camera_id]


def _cameras(*ids):
    return [
        CameraDescriptor(id=cid, name=f"Cam {cid}", school_id="s1",
                         stream_address=f"http://78.46.228.35:8001/{cid}/index.m3u8")
        for cid in ids
    ]


def _surfaces():
    surfaces: dict[str, PlaybackSurface] = {}

    def provider(descriptor):
        return surfaces.setdefault(descriptor.id, PlaybackSurface(descriptor.id))

    return surfaces, provider


async def _drain_fatal(manager):
    while manager._fatal_tasks:
        await asyncio.gather(*list(manager._fatal_tasks))


@pytest.mark.asyncio
async def test_attach_all_one_session_per_camera():
    factory = FakeFactory()
    manager = StreamSessionManager(factory, page_is_secure=True, refresh_interval=60)
    surfaces, provider = _surfaces()

    attached = await manager.attach_all(_cameras("a", "b", "c"), provider)
    assert sorted(attached) == ["a", "b", "c"]
    assert set(manager.sessions()) == {"a", "b", "c"}
    assert all(h.started for h in factory.handles)
    assert factory.handles[0].address.startswith("/camera-proxy-8001/")
    assert manager.refreshing

    # a second attach for the same cameras is a no-op
    again = await manager.attach_all(_cameras("a"), provider)
    assert again == []
    assert len(factory.for_camera("a")) == 1

    await manager.teardown_all()


@pytest.mark.asyncio
async def test_manifest_parsed_starts_muted_playback():
    factory = FakeFactory()
    manager = StreamSessionManager(factory, refresh_interval=60)
    surfaces, provider = _surfaces()
    await manager.attach_all(_cameras("a"), provider)

    factory.handles[0].on_manifest_parsed()
    assert manager.get("a").state is SessionState.PLAYING
    assert surfaces["a"].playing and surfaces["a"].muted

    await manager.teardown_all()


@pytest.mark.asyncio
async def test_teardown_one_leaves_others_running():
    factory = FakeFactory()
    manager = StreamSessionManager(factory, refresh_interval=60)
    _, provider = _surfaces()
    await manager.attach_all(_cameras("a", "b", "c"), provider)

    assert await manager.teardown("b") is True
    assert await manager.teardown("b") is False
    assert set(manager.sessions()) == {"a", "c"}
    assert factory.for_camera("b")[0].destroyed
    assert not factory.for_camera("a")[0].destroyed

    await manager.teardown_all()


@pytest.mark.asyncio
async def test_refresh_replaces_handle_and_keeps_surface():
    factory = FakeFactory()
    manager = StreamSessionManager(factory, refresh_interval=60)
    surfaces, provider = _surfaces()
    await manager.attach_all(_cameras("a", "b"), provider)
    first = manager.get("a")
    old_handle = first.handle

    await manager.refresh_all()

    second = manager.get("a")
    assert second is not first
    assert old_handle.destroyed
    assert second.handle is not old_handle
    assert second.surface is surfaces["a"]
    assert surfaces["a"].source is second.handle
    assert surfaces["a"].bind_count == 2
    assert len(factory.handles) == 4

    await manager.teardown_all()


@pytest.mark.asyncio
async def test_teardown_all_releases_everything_and_stops_refresh():
    factory = FakeFactory()
    manager = StreamSessionManager(factory, refresh_interval=0.01)
    _, provider = _surfaces()
    await manager.attach_all(_cameras("a", "b"), provider)

    await asyncio.sleep(0.05)
    assert manager.schedule.ticks >= 1

    await manager.teardown_all()
    assert manager.sessions() == {}
    assert not manager.refreshing
    assert all(h.destroyed for h in factory.handles)

    created = len(factory.handles)
    await asyncio.sleep(0.05)
    assert len(factory.handles) == created


@pytest.mark.asyncio
async def test_fatal_error_isolated_to_one_camera():
    factory = FakeFactory()
    manager = StreamSessionManager(factory, refresh_interval=60)
    surfaces, provider = _surfaces()
    await manager.attach_all(_cameras("a", "b", "c"), provider)

    broken = factory.for_camera("b")[0]
    broken.on_error(NetworkError("gateway gone", fatal=True))
    await _drain_fatal(manager)

    assert set(manager.sessions()) == {"a", "c"}
    assert broken.destroyed
    assert surfaces["b"].error is not None
    assert manager.status()["cameras"]["b"]["state"] == "error"
    assert manager.status()["cameras"]["b"]["error"]["type"] == "network"
    assert not factory.for_camera("a")[0].destroyed

    # refresh does not resurrect the failed camera
    await manager.refresh_all()
    assert len(factory.for_camera("b")) == 1

    await manager.teardown_all()


@pytest.mark.asyncio
async def test_non_fatal_error_is_counted_not_escalated():
    factory = FakeFactory()
    manager = StreamSessionManager(factory, refresh_interval=60)
    _, provider = _surfaces()
    await manager.attach_all(_cameras("a"), provider)

    factory.handles[0].on_error(NetworkError("blip"))
    await _drain_fatal(manager)
    session = manager.get("a")
    assert session is not None
    assert session.recovered_errors == 1

    await manager.teardown_all()


@pytest.mark.asyncio
async def test_stale_fatal_after_refresh_is_ignored():
    factory = FakeFactory()
    manager = StreamSessionManager(factory, refresh_interval=60)
    _, provider = _surfaces()
    await manager.attach_all(_cameras("a"), provider)
    old = factory.handles[0]

    await manager.refresh_all()
    replacement = manager.get("a")
    # late callback from the destroyed handle
    old.on_error(NetworkError("late", fatal=True))
    await _drain_fatal(manager)

    assert manager.get("a") is replacement
    assert manager.errors() == {}

    await manager.teardown_all()


@pytest.mark.asyncio
async def test_rejected_address_shows_error_without_session():
    from schoolwatch.address_translator import UnknownOriginPolicy

    factory = FakeFactory()
    manager = StreamSessionManager(
        factory,
        page_is_secure=True,
        unknown_origin_policy=UnknownOriginPolicy.REJECT,
        refresh_interval=60,
    )
    surfaces, provider = _surfaces()
    cams = [CameraDescriptor("x", "X", "s1", "http://10.1.1.1/live.m3u8")] + _cameras("a")

    attached = await manager.attach_all(cams, provider)
    assert attached == ["a"]
    assert "x" in manager.errors()
    assert surfaces["x"].error.kind == "mixed_content"
    assert factory.for_camera("x") == []

    await manager.teardown_all()


@pytest.mark.asyncio
async def test_schedule_survives_failing_tick():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")

    schedule = RefreshSchedule(0.01, flaky)
    schedule.start()
    await asyncio.sleep(0.06)
    await schedule.cancel()
    assert len(calls) >= 2
    assert not schedule.running


def test_schedule_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        RefreshSchedule(0, lambda: None)


class FailingReattachFactory(FakeFactory):
    """Creates the first handle for each camera, then fails for ``broken``."""

    def __init__(self, broken):
        super().__init__()
        self.broken = broken

    def __call__(self, address, surface, *, on_manifest_parsed, on_error):
        if surface.camera_id == self.broken and self.for_camera(self.broken):
            raise OSError("decoder unavailable")
        return super().__call__(address, surface, on_manifest_parsed=on_manifest_parsed, on_error=on_error)


@pytest.mark.asyncio
async def test_teardown_during_attach_leaves_nothing_running():
    factory = FakeFactory()
    manager = StreamSessionManager(factory, refresh_interval=0.01)
    _, provider = _surfaces()

    pending = asyncio.ensure_future(manager.attach_all(_cameras("a", "b", "c"), provider))
    await asyncio.sleep(0)
    await manager.teardown_all()
    attached = await pending

    assert attached == []
    assert manager.sessions() == {}
    assert not manager.refreshing
    assert all(h.destroyed for h in factory.handles)

    await asyncio.sleep(0.05)
    assert manager.schedule.ticks == 0


@pytest.mark.asyncio
async def test_attach_with_outdated_generation_is_dropped():
    factory = FakeFactory()
    manager = StreamSessionManager(factory, refresh_interval=60)
    _, provider = _surfaces()

    generation = manager.generation
    await manager.teardown_all()
    assert manager.generation == generation + 1

    attached = await manager.attach_all(_cameras("a"), provider, generation=generation)
    assert attached == []
    assert factory.handles == []
    assert manager.sessions() == {}
    assert not manager.refreshing


@pytest.mark.asyncio
async def test_reattach_failure_during_refresh_marks_only_that_camera():
    factory = FailingReattachFactory("b")
    manager = StreamSessionManager(factory, refresh_interval=60)
    surfaces, provider = _surfaces()
    await manager.attach_all(_cameras("a", "b", "c"), provider)
    before = {cid: manager.get(cid) for cid in ("a", "b", "c")}

    await manager.refresh_all()

    assert set(manager.sessions()) == {"a", "c"}
    assert manager.get("a") is not before["a"]
    assert manager.get("c") is not before["c"]
    assert "b" in manager.errors()
    assert manager.errors()["b"].fatal
    assert surfaces["b"].error is not None
    assert surfaces["b"].source is None
    assert manager.status()["cameras"]["b"]["state"] == "error"
    assert "b" not in manager._addresses

    # the next refresh leaves the failed camera alone
    await manager.refresh_all()
    assert len(factory.for_camera("b")) == 1

    await manager.teardown_all()
