"""Error taxonomy shared by the stream, capture and upload components."""

from __future__ import annotations

from typing import Iterable, Sequence


class SchoolWatchError(Exception):
    """Base class for every error raised by this package."""


# --- streams ---

class StreamError(SchoolWatchError):
    """Fault reported by a stream loader; ``fatal`` decides escalation."""

    kind = "stream"

    def __init__(self, message: str, *, fatal: bool = False) -> None:
        super().__init__(message)
        self.fatal = bool(fatal)

    def describe(self) -> dict[str, object]:
        return {"type": self.kind, "fatal": self.fatal, "message": str(self)}


class NetworkError(StreamError):
    kind = "network"


class DecodeError(StreamError):
    kind = "decode"


class MixedContentBlocked(StreamError):
    """Plain-transport address under a secure page with no proxy route."""

    kind = "mixed_content"

    def __init__(self, address: str) -> None:
        super().__init__(f"no proxy route for insecure stream address {address!r}", fatal=True)
        self.address = address


class SurfaceBusy(SchoolWatchError):
    """A playback surface already has a live handle bound to it."""


# --- capture ---

class CaptureError(SchoolWatchError):
    pass


class DeviceAccessDenied(CaptureError):
    pass


class CaptureBusy(CaptureError):
    pass


class UnsupportedContentType(CaptureError):
    pass


# --- pickup submission ---

class ValidationError(SchoolWatchError):
    def __init__(self, missing_fields: Iterable[str]) -> None:
        self.missing_fields = tuple(missing_fields)
        super().__init__("missing required fields: " + ", ".join(self.missing_fields))


class StoreError(SchoolWatchError):
    """Asset or record store request rejected by the backend."""

    def __init__(self, message: str, *, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class UploadFailure(SchoolWatchError):
    """Pickup submission aborted mid-pipeline.

    ``uploaded`` lists public references stored before the failing step;
    they are left in place.
    """

    def __init__(self, step: str, uploaded: Sequence[str], cause: BaseException) -> None:
        self.step = step
        self.uploaded = tuple(uploaded)
        self.cause = cause
        super().__init__(f"pickup submission failed during {step}: {cause}")
