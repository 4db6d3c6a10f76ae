"""
HLS loader: the decoder/transport handle behind one Decoder Session.

- Follows a live HLS playlist (master playlists pick their first variant)
- Fetches new segments in order and feeds them to a PlaybackSurface
- Playlist and segment fetch faults are counted separately; too many
  consecutive ones turn fatal

One loader owns one background task. destroy() cancels it and waits, so a
replacement loader never overlaps with the one it replaces.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

import aiohttp
from yarl import URL

from .errors import DecodeError, NetworkError, StreamError
from .playback_surface import PlaybackSurface

# Segments behind the live edge to start from (same default as hls.js).
LIVE_SYNC_SEGMENTS = 3
TS_SYNC_BYTE = 0x47
FMP4_BOXES = (b"ftyp", b"styp", b"moof", b"moov", b"sidx")


@dataclass
class LoaderSettings:
    request_timeout_sec: float = 10.0
    retry_delay_sec: float = 1.0
    max_network_retries: int = 3
    max_decode_recoveries: int = 3
    max_buffered_segments: int = 8

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any] | None) -> "LoaderSettings":
        cfg = cfg or {}
        defaults = cls()
        return cls(
            request_timeout_sec=float(cfg.get("request_timeout_sec", defaults.request_timeout_sec)),
            retry_delay_sec=max(0.0, float(cfg.get("retry_delay_sec", defaults.retry_delay_sec))),
            max_network_retries=max(0, int(cfg.get("max_network_retries", defaults.max_network_retries))),
            max_decode_recoveries=max(0, int(cfg.get("max_decode_recoveries", defaults.max_decode_recoveries))),
            max_buffered_segments=max(1, int(cfg.get("max_buffered_segments", defaults.max_buffered_segments))),
        )


@dataclass
class Playlist:
    target_duration: float = 2.0
    media_sequence: int = 0
    segments: list[str] = field(default_factory=list)
    variants: list[str] = field(default_factory=list)
    ended: bool = False


def parse_playlist(text: str) -> Playlist:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if not lines or not lines[0].startswith("#EXTM3U"):
        raise DecodeError("playlist is not an M3U8 document", fatal=True)

    playlist = Playlist()
    expect_variant = False
    for line in lines[1:]:
        if line.startswith("#EXT-X-TARGETDURATION:"):
            try:
                playlist.target_duration = max(0.1, float(line.split(":", 1)[1]))
            except ValueError:
                raise DecodeError(f"bad target duration: {line}", fatal=True) from None
        elif line.startswith("#EXT-X-MEDIA-SEQUENCE:"):
            try:
                playlist.media_sequence = int(line.split(":", 1)[1])
            except ValueError:
                raise DecodeError(f"bad media sequence: {line}", fatal=True) from None
        elif line.startswith("#EXT-X-STREAM-INF"):
            expect_variant = True
        elif line.startswith("#EXT-X-ENDLIST"):
            playlist.ended = True
        elif line.startswith("#"):
            continue
        elif expect_variant:
            playlist.variants.append(line)
            expect_variant = False
        else:
            playlist.segments.append(line)
    return playlist


def looks_like_media(data: bytes) -> bool:
    if not data:
        return False
    if data[0] == TS_SYNC_BYTE:
        return True
    return len(data) >= 8 and data[4:8] in FMP4_BOXES


class HlsLoader:
    def __init__(
        self,
        address: str,
        surface: PlaybackSurface,
        *,
        http: aiohttp.ClientSession,
        base_url: str | None = None,
        settings: LoaderSettings | None = None,
        on_manifest_parsed: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[StreamError], None]] = None,
    ) -> None:
        self.address = address
        self.surface = surface
        self.url = URL(base_url).join(URL(address)) if base_url else URL(address)
        self.settings = settings or LoaderSettings()
        self._http = http
        self._on_manifest_parsed = on_manifest_parsed
        self._on_error = on_error
        self._task: Optional[asyncio.Task] = None
        self._destroyed = False
        self._playlist_faults = 0
        self._segment_faults = 0
        self._decode_faults = 0
        self._log = logging.getLogger("hls_loader")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def start(self) -> None:
        if self._destroyed:
            raise RuntimeError("loader already destroyed")
        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name=f"hls_loader:{self.surface.camera_id}")
        self._log.debug("HLS loader started for %s (%s)", self.surface.camera_id, self.url)

    async def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._log.debug("HLS loader destroyed for %s", self.surface.camera_id)

    # --- internals ---
    async def _run(self) -> None:
        try:
            await self._follow()
        except asyncio.CancelledError:
            raise
        except StreamError as exc:
            exc.fatal = True
            self._report(exc)
        except Exception as exc:  # noqa: BLE001
            self._log.exception("HLS loader crashed for %s", self.surface.camera_id)
            failure = StreamError(f"loader failed: {exc!r}", fatal=True)
            failure.__cause__ = exc
            self._report(failure)

    async def _follow(self) -> None:
        playlist_url = self.url
        next_seq: int | None = None
        parsed = False

        while True:
            try:
                text = await self._fetch(playlist_url, text=True)
            except NetworkError as exc:
                await self._network_fault(exc)
                continue
            self._playlist_faults = 0
            playlist = parse_playlist(text)
            if playlist.variants:
                playlist_url = playlist_url.join(URL(playlist.variants[0]))
                continue

            if not parsed:
                parsed = True
                if self._on_manifest_parsed is not None:
                    self._on_manifest_parsed()

            if next_seq is None:
                edge = len(playlist.segments) - LIVE_SYNC_SEGMENTS
                next_seq = playlist.media_sequence + (0 if playlist.ended else max(0, edge))

            stalled = False
            for index, uri in enumerate(playlist.segments):
                seq = playlist.media_sequence + index
                if seq < next_seq:
                    continue
                try:
                    data = await self._fetch(playlist_url.join(URL(uri)), text=False)
                except NetworkError as exc:
                    await self._network_fault(exc, segment=True)
                    stalled = True
                    break
                self._segment_faults = 0
                next_seq = seq + 1
                if not looks_like_media(data):
                    self._decode_fault(DecodeError(f"unrecognised media segment #{seq} ({len(data)} bytes)"))
                    continue
                self._decode_faults = 0
                self.surface.feed(data)

            if stalled:
                # retry delay already applied; re-read the playlist straight away
                continue
            if playlist.ended and next_seq >= playlist.media_sequence + len(playlist.segments):
                self._log.info("Playlist ended for %s", self.surface.camera_id)
                return
            await asyncio.sleep(playlist.target_duration)

    async def _fetch(self, url: URL, *, text: bool):
        timeout = aiohttp.ClientTimeout(total=self.settings.request_timeout_sec)
        try:
            async with self._http.get(url, timeout=timeout) as resp:
                if resp.status >= 400:
                    raise NetworkError(f"HTTP {resp.status} for {url}")
                data = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise NetworkError(f"request failed for {url}: {exc!r}") from exc
        if text:
            # Non-UTF-8 bodies fall through to the #EXTM3U check and fail there.
            return data.decode("utf-8", errors="replace")
        return data

    async def _network_fault(self, exc: NetworkError, *, segment: bool = False) -> None:
        if segment:
            self._segment_faults += 1
            faults = self._segment_faults
        else:
            self._playlist_faults += 1
            faults = self._playlist_faults
        if faults > self.settings.max_network_retries:
            raise NetworkError(f"{exc} (gave up after {faults} attempts)", fatal=True) from exc
        self._report(exc)
        await asyncio.sleep(self.settings.retry_delay_sec)

    def _decode_fault(self, exc: DecodeError) -> None:
        self._decode_faults += 1
        if self._decode_faults > self.settings.max_decode_recoveries:
            raise DecodeError(f"{exc} (media recovery exhausted)", fatal=True) from exc
        self._report(exc)

    def _report(self, exc: StreamError) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(exc)
        except Exception:  # noqa: BLE001 - owner callback must not kill the loader
            self._log.exception("error callback failed for %s", self.surface.camera_id)


class HlsLoaderFactory:
    """Builds loaders sharing one HTTP session and settings."""

    def __init__(
        self,
        http: aiohttp.ClientSession,
        *,
        base_url: str | None = None,
        settings: LoaderSettings | None = None,
    ) -> None:
        self.http = http
        self.base_url = base_url
        self.settings = settings or LoaderSettings()

    def __call__(
        self,
        address: str,
        surface: PlaybackSurface,
        *,
        on_manifest_parsed: Callable[[], None],
        on_error: Callable[[StreamError], None],
    ) -> HlsLoader:
        return HlsLoader(
            address,
            surface,
            http=self.http,
            base_url=self.base_url,
            settings=self.settings,
            on_manifest_parsed=on_manifest_parsed,
            on_error=on_error,
        )
