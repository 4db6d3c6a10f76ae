#!/usr/bin/env python3
"""
ffmpeg-backed MediaCaptureDevice.

- request_media() checks ffmpeg and the V4L2 node, then holds the device
  exclusively until the returned stream is stopped
- create_recorder() spawns ffmpeg reading camera + microphone and writing
  fragmented MP4 or WebM to stdout; request_data() hands back what arrived
- stop() asks ffmpeg to quit ("q" on stdin), escalating to SIGTERM/SIGKILL
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
from typing import Any, List, Mapping, Optional

from .errors import DeviceAccessDenied

READ_CHUNK_BYTES = 64 * 1024

_CONTAINER_ARGS = {
    "video/mp4": [
        "-f", "mp4",
        # Fragmented output so the stream is valid without seeking back.
        "-movflags", "frag_keyframe+empty_moov+default_base_moof",
    ],
    "video/webm": ["-f", "webm"],
}
_VIDEO_CODECS = {
    "video/mp4": {"": "libx264", "avc1": "libx264", "h264": "libx264"},
    "video/webm": {"": "libvpx", "vp8": "libvpx", "vp9": "libvpx-vp9"},
}
_AUDIO_CODECS = {
    "video/mp4": {"": "aac", "mp4a": "aac", "aac": "aac"},
    "video/webm": {"": "libopus", "opus": "libopus", "vorbis": "libvorbis"},
}


def _split_mime(mime_type: str) -> tuple[str, list[str]]:
    base, _, params = mime_type.partition(";")
    codecs: list[str] = []
    params = params.strip()
    if params.lower().startswith("codecs="):
        raw = params.split("=", 1)[1].strip().strip('"')
        codecs = [c.strip().lower().split(".", 1)[0] for c in raw.split(",") if c.strip()]
    return base.strip().lower(), codecs


def _codec_args(mime_type: str) -> Optional[list[str]]:
    base, codecs = _split_mime(mime_type)
    if base not in _CONTAINER_ARGS:
        return None
    video_codec = _VIDEO_CODECS[base][""]
    audio_codec = _AUDIO_CODECS[base][""]
    for codec in codecs:
        if codec in _VIDEO_CODECS[base]:
            video_codec = _VIDEO_CODECS[base][codec]
        elif codec in _AUDIO_CODECS[base]:
            audio_codec = _AUDIO_CODECS[base][codec]
        else:
            return None
    args = ["-c:v", video_codec]
    if video_codec == "libx264":
        args.extend(["-preset", "veryfast", "-pix_fmt", "yuv420p"])
    else:
        args.extend(["-deadline", "realtime", "-b:v", "1M"])
    args.extend(["-c:a", audio_codec])
    return args + _CONTAINER_ARGS[base]


class FFmpegMediaStream:
    def __init__(self, device: "FFmpegCaptureDevice", *, audio: bool, video: bool) -> None:
        self.device = device
        self.audio = audio
        self.video = video
        self.recorders: List["FFmpegRecorder"] = []
        self.active = True

    def stop(self) -> None:
        if not self.active:
            return
        self.active = False
        for recorder in self.recorders:
            recorder.kill()
        self.device._release(self)


class FFmpegRecorder:
    def __init__(self, stream: FFmpegMediaStream, mime_type: str, cmd: list[str]) -> None:
        self.stream = stream
        self.mime_type = mime_type
        self.cmd = cmd
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._reader: Optional[asyncio.Task] = None
        self._pending = bytearray()
        self._log = logging.getLogger("ffmpeg_capture")

    async def start(self) -> None:
        if self._proc is not None:
            return
        self._log.info("Launching ffmpeg: %s", " ".join(self.cmd))
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise DeviceAccessDenied(f"cannot launch ffmpeg: {exc}") from exc
        stdout = self._proc.stdout
        if stdout is None:
            self._proc.kill()
            raise DeviceAccessDenied("ffmpeg started without a stdout pipe")
        self._reader = asyncio.get_running_loop().create_task(self._read(stdout), name="ffmpeg_capture_reader")

    async def _read(self, stdout: asyncio.StreamReader) -> None:
        while True:
            chunk = await stdout.read(READ_CHUNK_BYTES)
            if not chunk:
                return
            self._pending.extend(chunk)

    async def request_data(self) -> bytes:
        data = bytes(self._pending)
        self._pending.clear()
        return data

    async def stop(self) -> bytes:
        proc = self._proc
        if proc is None:
            return b""
        if proc.returncode is None and proc.stdin is not None:
            try:
                proc.stdin.write(b"q")
                await proc.stdin.drain()
                proc.stdin.close()
            except (BrokenPipeError, ConnectionResetError) as e:
                self._log.debug("ffmpeg stdin close error: %r", e)
        await self._wait_or_escalate(proc)
        if self._reader is not None:
            await self._reader
            self._reader = None
        return await self.request_data()

    async def _wait_or_escalate(self, proc: asyncio.subprocess.Process) -> None:
        try:
            rc = await asyncio.wait_for(proc.wait(), timeout=3.0)
            self._log.info("ffmpeg capture exited rc=%s", rc)
            return
        except asyncio.TimeoutError:
            self._log.warning("ffmpeg capture did not quit; sending SIGTERM")
        proc.terminate()
        try:
            rc = await asyncio.wait_for(proc.wait(), timeout=1.5)
            self._log.info("ffmpeg terminated with rc=%s", rc)
            return
        except asyncio.TimeoutError:
            self._log.warning("ffmpeg did not exit after SIGTERM; sending SIGKILL")
        proc.kill()
        try:
            rc = await asyncio.wait_for(proc.wait(), timeout=1.0)
            self._log.info("ffmpeg killed; rc=%s", rc)
        except asyncio.TimeoutError:
            self._log.error("ffmpeg still not reaped after SIGKILL; zombie risk")

    def kill(self) -> None:
        proc = self._proc
        if proc is not None and proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass


class FFmpegCaptureDevice:
    def __init__(
        self,
        *,
        ffmpeg_path: str = "ffmpeg",
        video_device: str = "/dev/video0",
        audio_device: str = "default",
        video_size: str = "1280x720",
        framerate: int = 30,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.video_device = video_device
        self.audio_device = audio_device
        self.video_size = video_size
        self.framerate = int(framerate)
        self._active: Optional[FFmpegMediaStream] = None

    @classmethod
    def from_cfg(cls, capture_cfg: Mapping[str, Any] | None) -> "FFmpegCaptureDevice":
        capture_cfg = capture_cfg or {}
        return cls(
            ffmpeg_path=str(capture_cfg.get("ffmpeg_path") or "ffmpeg"),
            video_device=str(capture_cfg.get("video_device") or "/dev/video0"),
            audio_device=str(capture_cfg.get("audio_device") or "default"),
            video_size=str(capture_cfg.get("video_size") or "1280x720"),
            framerate=int(capture_cfg.get("framerate") or 30),
        )

    def _ffmpeg(self) -> Optional[str]:
        return shutil.which(self.ffmpeg_path)

    async def request_media(self, *, audio: bool, video: bool) -> FFmpegMediaStream:
        if self._active is not None:
            raise DeviceAccessDenied("capture device is held by another recording")
        if self._ffmpeg() is None:
            raise DeviceAccessDenied(f"{self.ffmpeg_path} not found in PATH")
        if video:
            if not os.path.exists(self.video_device):
                raise DeviceAccessDenied(f"camera {self.video_device} not present")
            if not os.access(self.video_device, os.R_OK | os.W_OK):
                raise DeviceAccessDenied(f"permission denied for camera {self.video_device}")
        if audio and not self.audio_device:
            raise DeviceAccessDenied("no microphone configured")
        stream = FFmpegMediaStream(self, audio=audio, video=video)
        self._active = stream
        return stream

    def _release(self, stream: FFmpegMediaStream) -> None:
        if self._active is stream:
            self._active = None

    def is_type_supported(self, mime_type: str) -> bool:
        return self._ffmpeg() is not None and _codec_args(mime_type) is not None

    def create_recorder(self, stream: FFmpegMediaStream, mime_type: str) -> FFmpegRecorder:
        codec_args = _codec_args(mime_type)
        if codec_args is None:
            raise ValueError(f"unsupported recording type: {mime_type}")
        cmd = [self._ffmpeg() or self.ffmpeg_path, "-hide_banner", "-loglevel", "warning"]
        if stream.video:
            cmd.extend([
                "-f", "v4l2",
                "-framerate", str(self.framerate),
                "-video_size", self.video_size,
                "-i", self.video_device,
            ])
        if stream.audio:
            cmd.extend(["-f", "alsa", "-i", self.audio_device])
        cmd.extend(codec_args)
        cmd.append("pipe:1")
        recorder = FFmpegRecorder(stream, mime_type, cmd)
        stream.recorders.append(recorder)
        return recorder
