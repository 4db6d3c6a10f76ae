from __future__ import annotations

import asyncio

import aiohttp
import pytest

import schoolwatch.web_portal as web_portal
from schoolwatch.camera_registry import StaticCameraRegistry
from schoolwatch.errors import DeviceAccessDenied, NetworkError, StoreError

TS = bytes([0x47]) + b"\x00" * 187


class FakeHandle:
    def __init__(self, address, surface, on_error):
        self.address = address
        self.surface = surface
        self.on_error = on_error
        self.destroyed = False

    def start(self):
        pass

    async def destroy(self):
        self.destroyed = True


class FakeFactory:
    def __init__(self):
        self.handles = {}

    def __call__(self, address, surface, *, on_manifest_parsed, on_error):
        handle = FakeHandle(address, surface, on_error)
        self.handles[surface.camera_id] = handle
        return handle


class FakeStream:
    def stop(self):
        pass


class FakeRecorder:
    mime_type = "video/webm"

    async def start(self):
        pass

    async def request_data(self):
        return b"frame"

    async def stop(self):
        return b"end"


class FakeDevice:
    def __init__(self, deny=False):
        self.deny = deny

    async def request_media(self, *, audio, video):
        if self.deny:
            raise DeviceAccessDenied("blocked")
        return FakeStream()

    def is_type_supported(self, mime_type):
        return mime_type == "video/webm"

    def create_recorder(self, stream, mime_type):
        return FakeRecorder()


class FakeAssets:
    def __init__(self, fail=False):
        self.fail = fail
        self.paths = []

    async def upload(self, bucket, path, data, content_type):
        if self.fail:
            raise StoreError("storage down", status=503)
        self.paths.append(path)
        return f"/assets/{bucket}/{path}"


class FakeRecords:
    def __init__(self):
        self.rows = []

    async def insert(self, collection, record):
        row = {"id": len(self.rows) + 1, **record}
        self.rows.append(row)
        return row

    async def update(self, collection, match, values):
        return []

    async def select(self, collection, filters=None, *, order=None, descending=False, limit=None):
        return [r for r in self.rows if r.get("escola_id") == (filters or {}).get("escola_id")]


CFG = {
    "streams": {"page_origin": "https://portal.test", "refresh_interval_sec": 60},
    "capture": {"chunk_interval_sec": 0.01, "mime_preferences": ["video/mp4", "video/webm"]},
    "backend": {"url": ""},
    "assets": {"bucket": "busca-segura"},
}

CAMERAS = [
    {"id": "a", "name": "Gate", "school_id": "s1", "stream_address": "http://78.46.228.35:8001/a.m3u8"},
    {"id": "b", "name": "Yard", "school_id": "s1", "stream_address": "http://78.46.228.35:8002/b.m3u8"},
]


def _app(*, device=None, assets=None, records=None, factory=None):
    return web_portal.build_app(
        cfg=CFG,
        registry=StaticCameraRegistry(CAMERAS),
        handle_factory=factory or FakeFactory(),
        capture_device=device or FakeDevice(),
        asset_store=assets or FakeAssets(),
        record_store=records or FakeRecords(),
    )


@pytest.mark.asyncio
async def test_camera_view_lifecycle(aiohttp_client):
    factory = FakeFactory()
    client = await aiohttp_client(_app(factory=factory))

    resp = await client.post("/api/camera-view", json={"school_id": "s1"})
    assert resp.status == 200
    body = await resp.json()
    assert sorted(body["attached"]) == ["a", "b"]
    assert body["refreshing"] is True
    assert factory.handles["a"].address == "/camera-proxy-8001/a.m3u8"

    resp = await client.get("/api/camera-view/a/segment")
    assert resp.status == 404

    factory.handles["a"].surface.feed(TS)
    resp = await client.get("/api/camera-view/a/segment")
    assert resp.status == 200
    assert resp.headers["Content-Type"] == "video/mp2t"
    assert await resp.read() == TS

    resp = await client.delete("/api/camera-view/b")
    assert resp.status == 200
    assert list((await resp.json())["cameras"]) == ["a"]
    assert factory.handles["b"].destroyed
    assert (await client.delete("/api/camera-view/b")).status == 404

    resp = await client.delete("/api/camera-view")
    body = await resp.json()
    assert body["cameras"] == {}
    assert body["refreshing"] is False
    assert body["school_id"] is None
    assert factory.handles["a"].destroyed


@pytest.mark.asyncio
async def test_refresh_swaps_handles(aiohttp_client):
    factory = FakeFactory()
    client = await aiohttp_client(_app(factory=factory))
    await client.post("/api/camera-view", json={"school_id": "s1"})
    first = factory.handles["a"]

    resp = await client.post("/api/camera-view/refresh")
    assert resp.status == 200
    assert first.destroyed
    assert factory.handles["a"] is not first
    assert factory.handles["a"].surface is first.surface


@pytest.mark.asyncio
async def test_failed_camera_reports_conflict(aiohttp_client):
    factory = FakeFactory()
    client = await aiohttp_client(_app(factory=factory))
    await client.post("/api/camera-view", json={"school_id": "s1"})

    factory.handles["b"].on_error(NetworkError("gateway down", fatal=True))
    manager = client.app[web_portal.SERVICES_KEY].manager
    while manager._fatal_tasks:
        await asyncio.gather(*list(manager._fatal_tasks))

    resp = await client.get("/api/camera-view/b/segment")
    assert resp.status == 409
    assert (await resp.json())["detail"]["type"] == "network"

    status = await (await client.get("/api/camera-view")).json()
    assert status["cameras"]["b"]["state"] == "error"
    assert status["cameras"]["a"]["state"] == "attaching"


class GatedRegistry(StaticCameraRegistry):
    def __init__(self, cameras):
        super().__init__(cameras)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def list(self, school_id):
        self.entered.set()
        await self.release.wait()
        return await super().list(school_id)


@pytest.mark.asyncio
async def test_close_while_opening_leaves_view_closed(aiohttp_client):
    factory = FakeFactory()
    registry = GatedRegistry(CAMERAS)
    app = web_portal.build_app(
        cfg=CFG,
        registry=registry,
        handle_factory=factory,
        capture_device=FakeDevice(),
        asset_store=FakeAssets(),
        record_store=FakeRecords(),
    )
    client = await aiohttp_client(app)

    opening = asyncio.ensure_future(client.post("/api/camera-view", json={"school_id": "s1"}))
    await registry.entered.wait()
    assert (await client.delete("/api/camera-view")).status == 200
    registry.release.set()

    resp = await opening
    assert resp.status == 409
    status = await (await client.get("/api/camera-view")).json()
    assert status["cameras"] == {}
    assert status["refreshing"] is False
    assert status["school_id"] is None
    assert factory.handles == {}


@pytest.mark.asyncio
async def test_open_view_requires_school(aiohttp_client):
    client = await aiohttp_client(_app())
    assert (await client.post("/api/camera-view", json={})).status == 400
    assert (await client.post("/api/camera-view", data="nope")).status == 400


def _pickup_form(**overrides):
    fields = {"requester_name": "Ana", "requester_document": "123", "student_id": "7", "school_id": "s1"}
    fields.update(overrides)
    form = aiohttp.FormData()
    for key, value in fields.items():
        form.add_field(key, value)
    form.add_field("photo", b"\xff\xd8jpeg", filename="face.jpg", content_type="image/jpeg")
    return form


@pytest.mark.asyncio
async def test_pickup_submission_flow(aiohttp_client):
    assets, records = FakeAssets(), FakeRecords()
    client = await aiohttp_client(_app(assets=assets, records=records))

    resp = await client.post("/api/pickup", data=_pickup_form())
    assert resp.status == 400
    assert (await resp.json())["missing"] == ["video"]
    assert assets.paths == []

    resp = await client.post("/api/pickup/recording/start")
    assert resp.status == 200
    assert (await resp.json())["content_type"] == "video/webm"
    assert (await client.post("/api/pickup/recording/start")).status == 409
    await asyncio.sleep(0.03)
    resp = await client.post("/api/pickup/recording/stop")
    snapshot = await resp.json()
    assert snapshot["status"] == "stopped"
    assert snapshot["asset_bytes"] > 0

    resp = await client.post("/api/pickup", data=_pickup_form())
    assert resp.status == 201
    created = (await resp.json())["request"]
    assert created["status"] == "pendente"
    assert created["id"] == "1"
    assert len(assets.paths) == 2

    status = await (await client.get("/api/pickup/recording")).json()
    assert status["status"] == "idle"

    listing = await (await client.get("/api/pickup", params={"school_id": "s1"})).json()
    assert [r["nome_buscador"] for r in listing["requests"]] == ["Ana"]
    assert (await client.get("/api/pickup")).status == 400


@pytest.mark.asyncio
async def test_upload_failure_keeps_recording(aiohttp_client):
    client = await aiohttp_client(_app(assets=FakeAssets(fail=True)))
    await client.post("/api/pickup/recording/start")
    await client.post("/api/pickup/recording/stop")

    resp = await client.post("/api/pickup", data=_pickup_form())
    assert resp.status == 502
    body = await resp.json()
    assert body["step"] == "photo upload"
    assert body["orphaned"] == []

    status = await (await client.get("/api/pickup/recording")).json()
    assert status["status"] == "stopped"


@pytest.mark.asyncio
async def test_denied_camera_returns_forbidden(aiohttp_client):
    client = await aiohttp_client(_app(device=FakeDevice(deny=True)))
    resp = await client.post("/api/pickup/recording/start")
    assert resp.status == 403
    status = await (await client.get("/api/pickup/recording")).json()
    assert status["status"] == "idle"
