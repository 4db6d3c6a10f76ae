"""
Media capture controller for consent videos.

States: IDLE -> REQUESTING_DEVICE -> RECORDING -> STOPPED, discard() -> IDLE.

The controller only talks to a MediaCaptureDevice, so tests and other
platforms can supply their own device. While recording, a 1-second tick
pulls the recorder's pending data into the chunk list and advances the
elapsed-seconds counter.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

from .errors import CaptureBusy, DeviceAccessDenied, UnsupportedContentType

DEFAULT_MIME_PREFERENCES: tuple[str, ...] = (
    "video/mp4",
    "video/webm;codecs=vp9,opus",
    "video/webm;codecs=vp8,opus",
    "video/webm",
)


@dataclass(frozen=True)
class MediaAsset:
    data: bytes
    content_type: str
    filename: Optional[str] = None

    def __len__(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        if self.filename and "." in self.filename:
            return self.filename.rsplit(".", 1)[1].lower()
        base = self.content_type.split(";", 1)[0].strip().lower()
        return {
            "video/mp4": "mp4",
            "video/webm": "webm",
            "image/jpeg": "jpg",
            "image/png": "png",
            "image/webp": "webp",
        }.get(base, "bin")


class MediaStream(Protocol):
    def stop(self) -> None: ...


class MediaRecorder(Protocol):
    mime_type: str

    async def start(self) -> None: ...

    async def request_data(self) -> bytes: ...

    async def stop(self) -> bytes: ...


class MediaCaptureDevice(Protocol):
    async def request_media(self, *, audio: bool, video: bool) -> MediaStream: ...

    def is_type_supported(self, mime_type: str) -> bool: ...

    def create_recorder(self, stream: MediaStream, mime_type: str) -> MediaRecorder: ...


class CaptureStatus(str, enum.Enum):
    IDLE = "idle"
    REQUESTING_DEVICE = "requesting_device"
    RECORDING = "recording"
    STOPPED = "stopped"


@dataclass
class CaptureState:
    status: CaptureStatus = CaptureStatus.IDLE
    elapsed_seconds: int = 0
    chunks: List[bytes] = field(default_factory=list)
    content_type: Optional[str] = None
    asset: Optional[MediaAsset] = None


class MediaCaptureController:
    def __init__(
        self,
        device: MediaCaptureDevice,
        *,
        mime_preferences: Sequence[str] = DEFAULT_MIME_PREFERENCES,
        chunk_interval: float = 1.0,
    ) -> None:
        self._device = device
        self._mime_preferences = tuple(mime_preferences)
        self._chunk_interval = float(chunk_interval)
        self._state = CaptureState()
        self._stream: Optional[MediaStream] = None
        self._recorder: Optional[MediaRecorder] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._log = logging.getLogger("media_capture")

    @property
    def status(self) -> CaptureStatus:
        return self._state.status

    @property
    def elapsed_seconds(self) -> int:
        return self._state.elapsed_seconds

    @property
    def asset(self) -> Optional[MediaAsset]:
        return self._state.asset

    @property
    def state(self) -> CaptureState:
        return CaptureState(
            status=self._state.status,
            elapsed_seconds=self._state.elapsed_seconds,
            chunks=list(self._state.chunks),
            content_type=self._state.content_type,
            asset=self._state.asset,
        )

    def negotiate_content_type(self) -> Optional[str]:
        for mime_type in self._mime_preferences:
            if self._device.is_type_supported(mime_type):
                return mime_type
        return None

    async def start(self) -> None:
        if self._state.status is not CaptureStatus.IDLE:
            raise CaptureBusy(f"cannot start recording while {self._state.status.value}")

        self._state = CaptureState(status=CaptureStatus.REQUESTING_DEVICE)
        stream: Optional[MediaStream] = None
        try:
            stream = await self._device.request_media(audio=True, video=True)
            mime_type = self.negotiate_content_type()
            if mime_type is None:
                raise UnsupportedContentType(
                    "no supported recording format in " + ", ".join(self._mime_preferences)
                )
            recorder = self._device.create_recorder(stream, mime_type)
            await recorder.start()
        except BaseException as exc:
            if stream is not None:
                stream.stop()
            self._state = CaptureState()
            if isinstance(exc, DeviceAccessDenied):
                self._log.warning("Camera/microphone access denied")
            raise

        self._stream = stream
        self._recorder = recorder
        self._state.content_type = mime_type
        self._state.status = CaptureStatus.RECORDING
        self._tick_task = asyncio.get_running_loop().create_task(self._tick(), name="capture_tick")
        self._log.info("Recording started (%s)", mime_type)

    async def _tick(self) -> None:
        recorder = self._recorder
        while True:
            await asyncio.sleep(self._chunk_interval)
            if recorder is None:
                return
            chunk = await recorder.request_data()
            if chunk:
                self._state.chunks.append(chunk)
            self._state.elapsed_seconds += 1

    async def stop(self) -> Optional[MediaAsset]:
        if self._state.status is not CaptureStatus.RECORDING:
            return None

        task, self._tick_task = self._tick_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                self._log.exception("Chunk collection failed; keeping %d chunk(s)", len(self._state.chunks))

        recorder, self._recorder = self._recorder, None
        stream, self._stream = self._stream, None
        tail = b""
        try:
            if recorder is not None:
                tail = await recorder.stop()
        except Exception:
            self._log.exception("Recorder failed to flush its final chunk")
        finally:
            if stream is not None:
                stream.stop()
        if tail:
            self._state.chunks.append(tail)

        content_type = self._state.content_type or "video/webm"
        asset = MediaAsset(b"".join(self._state.chunks), content_type)
        self._state.asset = asset
        self._state.status = CaptureStatus.STOPPED
        self._log.info(
            "Recording stopped after %ss (%d bytes, %s)",
            self._state.elapsed_seconds,
            len(asset.data),
            content_type,
        )
        return asset

    async def discard(self) -> None:
        if self._state.status is CaptureStatus.RECORDING:
            await self.stop()
        self._state = CaptureState()

    def status_snapshot(self) -> dict:
        asset = self._state.asset
        return {
            "status": self._state.status.value,
            "elapsed_seconds": self._state.elapsed_seconds,
            "content_type": self._state.content_type,
            "asset_bytes": len(asset.data) if asset else None,
        }
