"""Playback surface: the sink a camera's decoder handle renders into.

A surface outlives the handles feeding it. Refreshes swap the handle but
keep the surface (and its buffered segments) in place.
"""
from __future__ import annotations

import threading
import time
from collections import deque
from typing import Deque, Optional

from .errors import StreamError, SurfaceBusy


class PlaybackSurface:
    def __init__(self, camera_id: str, *, max_buffered_segments: int = 8) -> None:
        if max_buffered_segments <= 0:
            raise ValueError("max_buffered_segments must be positive")
        self.camera_id = camera_id
        self._lock = threading.Lock()
        self._segments: Deque[bytes] = deque(maxlen=max_buffered_segments)
        self._source: Optional[object] = None
        self.playing = False
        self.muted = True
        self.error: Optional[StreamError] = None
        self.segments_received = 0
        self.bind_count = 0
        self.last_segment_at: float | None = None

    # --- media source ownership ---
    def bind(self, handle: object) -> None:
        with self._lock:
            if self._source is not None and self._source is not handle:
                raise SurfaceBusy(f"surface for {self.camera_id} already has a live handle")
            self._source = handle
            self.bind_count += 1

    def unbind(self, handle: object) -> None:
        with self._lock:
            if self._source is handle:
                self._source = None
                self.playing = False

    @property
    def source(self) -> Optional[object]:
        with self._lock:
            return self._source

    # --- playback ---
    def play(self, *, muted: bool = True) -> None:
        with self._lock:
            self.muted = muted
            self.playing = True
            self.error = None

    def feed(self, segment: bytes) -> None:
        with self._lock:
            self._segments.append(bytes(segment))
            self.segments_received += 1
            self.last_segment_at = time.time()

    def latest_segment(self) -> Optional[bytes]:
        with self._lock:
            return self._segments[-1] if self._segments else None

    # --- error affordance ---
    def show_error(self, exc: StreamError) -> None:
        with self._lock:
            self.error = exc
            self.playing = False

    def clear_error(self) -> None:
        with self._lock:
            self.error = None

    def status(self) -> dict:
        with self._lock:
            return {
                "camera_id": self.camera_id,
                "playing": self.playing,
                "muted": self.muted,
                "segments_received": self.segments_received,
                "buffered_segments": len(self._segments),
                "last_segment_epoch": self.last_segment_at,
                "error": self.error.describe() if self.error else None,
            }
