"""Decoder session: one live binding of an HLS stream to a playback surface."""

from __future__ import annotations

import enum
import logging
import time
from typing import Any, Callable, Optional, Protocol

from .errors import StreamError
from .playback_surface import PlaybackSurface


class SessionState(str, enum.Enum):
    ATTACHING = "attaching"
    PLAYING = "playing"
    ERROR = "error"
    DESTROYED = "destroyed"


class DecoderHandle(Protocol):
    def start(self) -> None: ...

    async def destroy(self) -> None: ...


class HandleFactory(Protocol):
    def __call__(
        self,
        address: str,
        surface: PlaybackSurface,
        *,
        on_manifest_parsed: Callable[[], None],
        on_error: Callable[[StreamError], None],
    ) -> DecoderHandle: ...


class DecoderSession:
    def __init__(
        self,
        camera_id: str,
        handle_factory: HandleFactory,
        *,
        on_fatal: Optional[Callable[["DecoderSession", StreamError], None]] = None,
    ) -> None:
        self.camera_id = camera_id
        self.state = SessionState.ATTACHING
        self.handle: Optional[DecoderHandle] = None
        self.surface: Optional[PlaybackSurface] = None
        self.address: Optional[str] = None
        self.attached_at: float | None = None
        self.last_error: Optional[StreamError] = None
        self.recovered_errors = 0
        self._handle_factory = handle_factory
        self._on_fatal = on_fatal
        self._log = logging.getLogger("decoder_session")

    @property
    def live(self) -> bool:
        return self.state in (SessionState.ATTACHING, SessionState.PLAYING)

    async def attach(self, effective_address: str, surface: PlaybackSurface) -> None:
        if self.handle is not None or self.state is SessionState.DESTROYED:
            raise RuntimeError(f"session for {self.camera_id} cannot be attached twice")
        handle = self._handle_factory(
            effective_address,
            surface,
            on_manifest_parsed=self._manifest_parsed,
            on_error=self._handle_error,
        )
        surface.bind(handle)
        self.handle = handle
        self.surface = surface
        self.address = effective_address
        self.attached_at = time.time()
        self.state = SessionState.ATTACHING
        try:
            handle.start()
        except Exception:
            surface.unbind(handle)
            self.handle = None
            raise

    async def destroy(self) -> None:
        if self.state is SessionState.DESTROYED:
            return
        self.state = SessionState.DESTROYED
        handle, surface = self.handle, self.surface
        self.handle = None
        if handle is not None:
            try:
                await handle.destroy()
            finally:
                if surface is not None:
                    surface.unbind(handle)

    def _manifest_parsed(self) -> None:
        if self.state is not SessionState.ATTACHING:
            return
        self.state = SessionState.PLAYING
        if self.surface is not None:
            # Autoplay policies only allow muted playback to start unprompted.
            self.surface.play(muted=True)

    def _handle_error(self, exc: StreamError) -> None:
        if self.state is SessionState.DESTROYED:
            return
        self.last_error = exc
        if not exc.fatal:
            self.recovered_errors += 1
            self._log.debug("%s: recovering from %s error: %s", self.camera_id, exc.kind, exc)
            return
        self._log.warning("%s: fatal %s error: %s", self.camera_id, exc.kind, exc)
        self.state = SessionState.ERROR
        if self._on_fatal is not None:
            self._on_fatal(self, exc)

    def status(self) -> dict[str, Any]:
        return {
            "camera_id": self.camera_id,
            "state": self.state.value,
            "address": self.address,
            "attached_at": self.attached_at,
            "recovered_errors": self.recovered_errors,
            "last_error": self.last_error.describe() if self.last_error else None,
        }
