#!/usr/bin/env python3
"""
Portal HTTP service for the camera view and secure pickup submissions.

Camera view:
  POST   /api/camera-view                      open view for {"school_id": ...}
  GET    /api/camera-view                      per-camera session status
  POST   /api/camera-view/refresh              force a refresh cycle
  DELETE /api/camera-view/{camera_id}          stop one feed
  DELETE /api/camera-view                      leave the view (tear down all)
  GET    /api/camera-view/{camera_id}/segment  latest buffered media segment

Secure pickup:
  GET    /api/pickup/recording                 capture status
  POST   /api/pickup/recording/{start,stop,discard}
  POST   /api/pickup                           multipart submission (fields + photo)
  GET    /api/pickup?school_id=...             requests for a school
"""
from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import aiohttp
from aiohttp import web

from .address_translator import UnknownOriginPolicy, page_is_secure_for, proxy_routes_from_cfg
from .asset_store import AssetStore, load_asset_store
from .camera_registry import CameraDescriptor, CameraRegistry, RestCameraRegistry, StaticCameraRegistry
from .config import get_cfg, reload_cfg
from .decoder_session import HandleFactory
from .errors import (
    CaptureBusy,
    DeviceAccessDenied,
    StoreError,
    UnsupportedContentType,
    UploadFailure,
    ValidationError,
)
from .ffmpeg_capture import FFmpegCaptureDevice
from .hls_loader import HlsLoaderFactory, LoaderSettings
from .media_capture import DEFAULT_MIME_PREFERENCES, MediaAsset, MediaCaptureController, MediaCaptureDevice
from .pickup_upload import SecurePickupUploadPipeline
from .playback_surface import PlaybackSurface
from .portal_rest import PortalRestClient
from .record_store import RecordStore, RestRecordStore
from .stream_sessions import StreamSessionManager


@dataclass
class CameraView:
    school_id: Optional[str] = None


@dataclass
class PortalServices:
    """Components that need the shared HTTP session; filled in on startup."""

    http: Optional[aiohttp.ClientSession] = None
    registry: Optional[CameraRegistry] = None
    manager: Optional[StreamSessionManager] = None
    pipeline: Optional[SecurePickupUploadPipeline] = None


CONFIG_KEY: web.AppKey[Dict[str, Any]] = web.AppKey("config", dict)
SERVICES_KEY: web.AppKey[PortalServices] = web.AppKey("services", PortalServices)
SURFACES_KEY: web.AppKey[Dict[str, PlaybackSurface]] = web.AppKey("surfaces", dict)
VIEW_KEY: web.AppKey[CameraView] = web.AppKey("camera_view", CameraView)
CAPTURE_KEY: web.AppKey[MediaCaptureController] = web.AppKey("capture", MediaCaptureController)


def _json_error(status: int, message: str, **extra: Any) -> web.Response:
    return web.json_response({"error": message, **extra}, status=status)


def build_app(
    *,
    cfg: Optional[Mapping[str, Any]] = None,
    registry: Optional[CameraRegistry] = None,
    handle_factory: Optional[HandleFactory] = None,
    capture_device: Optional[MediaCaptureDevice] = None,
    asset_store: Optional[AssetStore] = None,
    record_store: Optional[RecordStore] = None,
) -> web.Application:
    log = logging.getLogger("web_portal")
    cfg = dict(cfg or get_cfg())
    streams_cfg = cfg.get("streams") or {}
    capture_cfg = cfg.get("capture") or {}
    settings = LoaderSettings.from_cfg(streams_cfg.get("loader"))
    page_origin = str(streams_cfg.get("page_origin") or "")

    app = web.Application()
    app[CONFIG_KEY] = cfg
    app[SURFACES_KEY] = {}
    app[VIEW_KEY] = CameraView()
    services = PortalServices()
    app[SERVICES_KEY] = services
    app[CAPTURE_KEY] = MediaCaptureController(
        capture_device or FFmpegCaptureDevice.from_cfg(capture_cfg),
        mime_preferences=capture_cfg.get("mime_preferences") or DEFAULT_MIME_PREFERENCES,
        chunk_interval=float(capture_cfg.get("chunk_interval_sec", 1.0)),
    )

    async def _services(app: web.Application):
        async with aiohttp.ClientSession() as http:
            services.http = http
            client: Optional[PortalRestClient] = None
            if (cfg.get("backend") or {}).get("url"):
                client = PortalRestClient.from_cfg(cfg, http)

            if registry is not None:
                services.registry = registry
            elif client is not None:
                camera_collection = (cfg.get("records") or {}).get("camera_collection", "cameras")
                services.registry = RestCameraRegistry(client, collection=camera_collection)
            else:
                services.registry = StaticCameraRegistry(cfg.get("cameras") or [])

            services.manager = StreamSessionManager(
                handle_factory or HlsLoaderFactory(http, base_url=page_origin or None, settings=settings),
                page_is_secure=page_is_secure_for(page_origin),
                proxy_routes=proxy_routes_from_cfg(streams_cfg.get("proxy_routes")),
                unknown_origin_policy=UnknownOriginPolicy.parse(streams_cfg.get("unknown_origin_policy")),
                refresh_interval=float(streams_cfg.get("refresh_interval_sec", 30.0)),
            )

            records = record_store or (RestRecordStore(client) if client is not None else None)
            assets = asset_store
            if assets is None:
                try:
                    assets = load_asset_store(cfg, client=client)
                except ValueError as exc:
                    log.warning("Pickup uploads disabled: %s", exc)
            if assets is not None and records is not None:
                services.pipeline = SecurePickupUploadPipeline.from_cfg(cfg, assets, records)
            else:
                services.pipeline = None
                log.warning("Pickup submissions disabled: asset or record store not configured")

            yield

            await services.manager.teardown_all()
            await app[CAPTURE_KEY].discard()

    app.cleanup_ctx.append(_services)

    def _surface_provider(descriptor: CameraDescriptor) -> PlaybackSurface:
        surfaces = app[SURFACES_KEY]
        surface = surfaces.get(descriptor.id)
        if surface is None:
            surface = PlaybackSurface(descriptor.id, max_buffered_segments=settings.max_buffered_segments)
            surfaces[descriptor.id] = surface
        return surface

    def _view_status() -> Dict[str, Any]:
        return {"school_id": app[VIEW_KEY].school_id, **services.manager.status()}

    # --- camera view ---
    async def open_view(request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except ValueError:
            return _json_error(400, "expected a JSON body")
        school_id = str((payload or {}).get("school_id") or "").strip()
        if not school_id:
            return _json_error(400, "school_id is required")

        view = app[VIEW_KEY]
        manager = services.manager
        if view.school_id not in (None, school_id):
            await manager.teardown_all()
            app[SURFACES_KEY].clear()
        generation = manager.generation
        try:
            descriptors = await services.registry.list(school_id)
        except StoreError as exc:
            log.warning("Camera registry unavailable: %s", exc)
            return _json_error(502, "camera registry unavailable")
        if generation != manager.generation:
            return _json_error(409, "camera view was closed while opening")
        view.school_id = school_id
        attached = await manager.attach_all(descriptors, _surface_provider, generation=generation)
        if generation != manager.generation:
            return _json_error(409, "camera view was closed while opening")
        return web.json_response({"attached": attached, **_view_status()})

    async def view_status(request: web.Request) -> web.Response:
        return web.json_response(_view_status())

    async def refresh_view(request: web.Request) -> web.Response:
        await services.manager.refresh_all()
        return web.json_response(_view_status())

    async def close_camera(request: web.Request) -> web.Response:
        camera_id = request.match_info["camera_id"]
        if not await services.manager.teardown(camera_id):
            return _json_error(404, f"no stream for camera {camera_id}")
        return web.json_response(_view_status())

    async def close_view(request: web.Request) -> web.Response:
        await services.manager.teardown_all()
        app[SURFACES_KEY].clear()
        app[VIEW_KEY].school_id = None
        return web.json_response(_view_status())

    async def latest_segment(request: web.Request) -> web.Response:
        camera_id = request.match_info["camera_id"]
        surface = services.manager.surface(camera_id)
        if surface is None:
            return _json_error(404, f"no stream for camera {camera_id}")
        if surface.error is not None:
            return _json_error(409, "camera feed failed", detail=surface.error.describe())
        segment = surface.latest_segment()
        if segment is None:
            return _json_error(404, "no media buffered yet")
        content_type = "video/mp2t" if segment[:1] == b"\x47" else "video/mp4"
        return web.Response(body=segment, content_type=content_type, headers={"Cache-Control": "no-store"})

    # --- capture ---
    async def recording_status(request: web.Request) -> web.Response:
        return web.json_response(app[CAPTURE_KEY].status_snapshot())

    async def recording_start(request: web.Request) -> web.Response:
        capture = app[CAPTURE_KEY]
        try:
            await capture.start()
        except DeviceAccessDenied as exc:
            return _json_error(403, f"camera access denied: {exc}")
        except CaptureBusy as exc:
            return _json_error(409, str(exc))
        except UnsupportedContentType as exc:
            return _json_error(415, str(exc))
        return web.json_response(capture.status_snapshot())

    async def recording_stop(request: web.Request) -> web.Response:
        capture = app[CAPTURE_KEY]
        await capture.stop()
        return web.json_response(capture.status_snapshot())

    async def recording_discard(request: web.Request) -> web.Response:
        capture = app[CAPTURE_KEY]
        await capture.discard()
        return web.json_response(capture.status_snapshot())

    # --- pickup ---
    async def submit_pickup(request: web.Request) -> web.Response:
        pipeline = services.pipeline
        if pipeline is None:
            return _json_error(503, "pickup submissions are not configured")
        form = await request.post()
        photo: Optional[MediaAsset] = None
        photo_field = form.get("photo")
        if isinstance(photo_field, web.FileField):
            photo = MediaAsset(
                photo_field.file.read(),
                photo_field.content_type or "application/octet-stream",
                photo_field.filename,
            )
        capture = app[CAPTURE_KEY]
        school_id = str(form.get("school_id") or "").strip() or app[VIEW_KEY].school_id
        try:
            created = await pipeline.submit(
                str(form.get("requester_name") or ""),
                str(form.get("requester_document") or ""),
                photo,
                capture.asset,
                str(form.get("student_id") or ""),
                school_id=school_id,
            )
        except ValidationError as exc:
            return _json_error(400, str(exc), missing=list(exc.missing_fields))
        except UploadFailure as exc:
            # Recording is kept so the requester can resubmit.
            return _json_error(502, str(exc), step=exc.step, orphaned=list(exc.uploaded))
        await capture.discard()
        return web.json_response({"request": created.to_record() | {"id": created.id}}, status=201)

    async def list_pickups(request: web.Request) -> web.Response:
        pipeline = services.pipeline
        if pipeline is None:
            return _json_error(503, "pickup submissions are not configured")
        school_id = request.query.get("school_id", "").strip()
        if not school_id:
            return _json_error(400, "school_id is required")
        try:
            requests = await pipeline.list_requests(school_id)
        except StoreError as exc:
            log.warning("Pickup listing failed: %s", exc)
            return _json_error(502, "record store unavailable")
        return web.json_response(
            {"requests": [req.to_record() | {"id": req.id} for req in requests]}
        )

    app.router.add_post("/api/camera-view", open_view)
    app.router.add_get("/api/camera-view", view_status)
    app.router.add_delete("/api/camera-view", close_view)
    app.router.add_post("/api/camera-view/refresh", refresh_view)
    app.router.add_delete("/api/camera-view/{camera_id}", close_camera)
    app.router.add_get("/api/camera-view/{camera_id}/segment", latest_segment)
    app.router.add_get("/api/pickup/recording", recording_status)
    app.router.add_post("/api/pickup/recording/start", recording_start)
    app.router.add_post("/api/pickup/recording/stop", recording_stop)
    app.router.add_post("/api/pickup/recording/discard", recording_discard)
    app.router.add_post("/api/pickup", submit_pickup)
    app.router.add_get("/api/pickup", list_pickups)
    return app


def cli_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="SchoolWatch camera view and secure pickup service.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument("--port", type=int, help="Override bind port (defaults to config).")
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args(argv)

    cfg = reload_cfg()
    level = getattr(logging, args.log_level.upper(), logging.INFO)
    if cfg.get("logging", {}).get("dev_mode"):
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    log = logging.getLogger("web_portal")

    server_cfg = cfg.get("web_server", {})
    host = args.host or str(server_cfg.get("listen_host", "0.0.0.0"))
    port = args.port or int(server_cfg.get("listen_port", 8080))
    log.info("Starting web_portal on %s:%s (access_log=%s)", host, port, "on" if args.access_log else "off")

    web.run_app(
        build_app(cfg=cfg),
        host=host,
        port=port,
        access_log=logging.getLogger("aiohttp.access") if args.access_log else None,
        print=None,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
