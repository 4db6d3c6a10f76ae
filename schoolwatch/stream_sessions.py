"""
Stream session manager (camera view orchestration).

- Keeps at most one DecoderSession per camera id.
- refresh_all() swaps every session's handle while keeping its surface;
  it runs on a RefreshSchedule while the camera view is open.
- A fatal error tears down only the affected camera and leaves an error
  marker for it; other cameras keep playing.
- teardown_all() cancels the schedule and releases every handle. It must
  run when the viewer leaves the camera view.

Attach/destroy for the same camera id are serialised with a per-id lock;
different cameras never wait on each other.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, Optional, Sequence

from .address_translator import (
    DEFAULT_PROXY_ROUTES,
    ProxyRoute,
    UnknownOriginPolicy,
    translate,
)
from .camera_registry import CameraDescriptor
from .decoder_session import DecoderSession, HandleFactory, SessionState
from .errors import StreamError
from .playback_surface import PlaybackSurface

SurfaceProvider = Callable[[CameraDescriptor], PlaybackSurface]

DEFAULT_REFRESH_INTERVAL = 30.0


class RefreshSchedule:
    """Cancellable periodic task; no tick fires once cancel() returns."""

    def __init__(self, interval: float, callback: Callable[[], Awaitable[None]]) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = float(interval)
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0
        self._log = logging.getLogger("stream_sessions")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="stream_refresh")

    async def cancel(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.ticks += 1
            try:
                await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - keep refreshing the remaining feeds
                self._log.exception("stream refresh tick %s failed", self.ticks)


class StreamSessionManager:
    def __init__(
        self,
        handle_factory: HandleFactory,
        *,
        page_is_secure: bool = False,
        proxy_routes: Sequence[ProxyRoute] = DEFAULT_PROXY_ROUTES,
        unknown_origin_policy: UnknownOriginPolicy = UnknownOriginPolicy.PASSTHROUGH,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
    ) -> None:
        self._handle_factory = handle_factory
        self.page_is_secure = page_is_secure
        self.proxy_routes = tuple(proxy_routes)
        self.unknown_origin_policy = unknown_origin_policy
        self._sessions: Dict[str, DecoderSession] = {}
        self._surfaces: Dict[str, PlaybackSurface] = {}
        self._addresses: Dict[str, str] = {}
        self._errors: Dict[str, StreamError] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._fatal_tasks: set[asyncio.Task] = set()
        self._generation = 0
        self._schedule = RefreshSchedule(refresh_interval, self.refresh_all)
        self._log = logging.getLogger("stream_sessions")

    # --- introspection ---
    def sessions(self) -> Dict[str, DecoderSession]:
        return dict(self._sessions)

    def get(self, camera_id: str) -> Optional[DecoderSession]:
        return self._sessions.get(camera_id)

    def errors(self) -> Dict[str, StreamError]:
        return dict(self._errors)

    def surface(self, camera_id: str) -> Optional[PlaybackSurface]:
        return self._surfaces.get(camera_id)

    @property
    def refreshing(self) -> bool:
        return self._schedule.running

    @property
    def schedule(self) -> RefreshSchedule:
        return self._schedule

    def status(self) -> dict:
        cameras = {}
        for camera_id in sorted(set(self._sessions) | set(self._errors)):
            session = self._sessions.get(camera_id)
            error = self._errors.get(camera_id)
            surface = self._surfaces.get(camera_id)
            cameras[camera_id] = {
                "state": session.state.value if session else SessionState.ERROR.value,
                "session": session.status() if session else None,
                "surface": surface.status() if surface else None,
                "error": error.describe() if error else None,
            }
        return {
            "cameras": cameras,
            "refreshing": self.refreshing,
            "refresh_interval_sec": self._schedule.interval,
            "refresh_ticks": self._schedule.ticks,
        }

    # --- lifecycle ---
    @property
    def generation(self) -> int:
        """Bumped by teardown_all(); attaches started under an older value are dropped."""
        return self._generation

    def _lock_for(self, camera_id: str) -> asyncio.Lock:
        lock = self._locks.get(camera_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[camera_id] = lock
        return lock

    async def attach_all(
        self,
        descriptors: Iterable[CameraDescriptor],
        surface_provider: SurfaceProvider,
        *,
        generation: Optional[int] = None,
    ) -> list[str]:
        if generation is None:
            generation = self._generation
        descriptors = list(descriptors)
        results = await asyncio.gather(
            *(self._attach_one(d, surface_provider, generation) for d in descriptors)
        )
        if generation != self._generation:
            self._log.info("Camera view closed while attaching; %d stream(s) dropped", len(descriptors))
            return []
        attached = [d.id for d, ok in zip(descriptors, results) if ok]
        if attached or self._sessions:
            self._schedule.start()
        if attached:
            self._log.info("Attached %d camera stream(s): %s", len(attached), ", ".join(attached))
        return attached

    async def _attach_one(
        self, descriptor: CameraDescriptor, surface_provider: SurfaceProvider, generation: int
    ) -> bool:
        camera_id = descriptor.id
        async with self._lock_for(camera_id):
            if generation != self._generation or camera_id in self._sessions:
                return False
            try:
                address = translate(
                    descriptor.stream_address,
                    self.page_is_secure,
                    self.proxy_routes,
                    policy=self.unknown_origin_policy,
                )
            except StreamError as exc:
                self._log.warning("Not attaching %s: %s", camera_id, exc)
                surface = surface_provider(descriptor)
                self._surfaces[camera_id] = surface
                self._mark_failed(camera_id, surface, exc)
                return False
            surface = surface_provider(descriptor)
            surface.clear_error()
            self._errors.pop(camera_id, None)
            self._surfaces[camera_id] = surface
            self._addresses[camera_id] = address
            try:
                session = await self._start_session(camera_id, address, surface)
            except Exception as exc:  # noqa: BLE001
                self._log.warning("Attach failed for %s: %r", camera_id, exc)
                self._mark_failed(camera_id, surface, exc)
                return False
            if generation != self._generation:
                self._sessions.pop(camera_id, None)
                self._addresses.pop(camera_id, None)
                await session.destroy()
                return False
            return True

    async def _start_session(self, camera_id: str, address: str, surface: PlaybackSurface) -> DecoderSession:
        session = DecoderSession(camera_id, self._handle_factory, on_fatal=self._on_fatal)
        self._sessions[camera_id] = session
        try:
            await session.attach(address, surface)
        except Exception:
            self._sessions.pop(camera_id, None)
            raise
        return session

    def _mark_failed(self, camera_id: str, surface: PlaybackSurface, exc: BaseException) -> None:
        error = exc if isinstance(exc, StreamError) else StreamError(f"attach failed: {exc}", fatal=True)
        error.fatal = True
        self._addresses.pop(camera_id, None)
        self._errors[camera_id] = error
        surface.show_error(error)

    async def refresh_all(self) -> None:
        camera_ids = list(self._sessions)
        if not camera_ids:
            return
        results = await asyncio.gather(
            *(self._refresh_one(camera_id) for camera_id in camera_ids), return_exceptions=True
        )
        for camera_id, result in zip(camera_ids, results):
            if isinstance(result, BaseException):
                self._log.error("Refresh of %s failed: %r", camera_id, result)
        self._log.debug("Refreshed %d camera stream(s)", len(camera_ids))

    async def _refresh_one(self, camera_id: str) -> None:
        async with self._lock_for(camera_id):
            old = self._sessions.get(camera_id)
            if old is None:
                return
            surface = self._surfaces[camera_id]
            address = self._addresses[camera_id]
            # Release the old handle before the new one touches the surface.
            await old.destroy()
            if self._sessions.get(camera_id) is not old:
                return
            self._sessions.pop(camera_id, None)
            try:
                await self._start_session(camera_id, address, surface)
            except Exception as exc:  # noqa: BLE001
                self._log.warning("Re-attach failed for %s: %r", camera_id, exc)
                self._mark_failed(camera_id, surface, exc)

    async def teardown(self, camera_id: str) -> bool:
        async with self._lock_for(camera_id):
            session = self._sessions.pop(camera_id, None)
            if session is None:
                return False
            await session.destroy()
            self._addresses.pop(camera_id, None)
        self._log.info("Tore down stream for %s", camera_id)
        return True

    async def teardown_all(self) -> None:
        self._generation += 1
        await self._schedule.cancel()
        pending = list(self._fatal_tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        camera_ids = list(self._sessions)
        if camera_ids:
            await asyncio.gather(*(self.teardown(camera_id) for camera_id in camera_ids))
        self._surfaces.clear()
        self._addresses.clear()
        self._errors.clear()
        self._log.info("Camera view closed; %d stream(s) released", len(camera_ids))

    # --- fault isolation ---
    def _on_fatal(self, session: DecoderSession, exc: StreamError) -> None:
        task = asyncio.get_running_loop().create_task(
            self._handle_fatal(session, exc), name=f"stream_fatal:{session.camera_id}"
        )
        self._fatal_tasks.add(task)
        task.add_done_callback(self._fatal_tasks.discard)

    async def _handle_fatal(self, session: DecoderSession, exc: StreamError) -> None:
        camera_id = session.camera_id
        async with self._lock_for(camera_id):
            if self._sessions.get(camera_id) is not session:
                # Already replaced by a refresh or torn down.
                return
            self._sessions.pop(camera_id, None)
            self._addresses.pop(camera_id, None)
            await session.destroy()
            self._errors[camera_id] = exc
            surface = self._surfaces.get(camera_id)
            if surface is not None:
                surface.show_error(exc)
        self._log.warning("Camera %s stopped after fatal %s error: %s", camera_id, exc.kind, exc)
