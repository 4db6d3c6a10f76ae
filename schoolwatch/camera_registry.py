"""Camera registry backends: list the cameras a school exposes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Protocol

from .portal_rest import PortalRestClient


@dataclass(frozen=True)
class CameraDescriptor:
    id: str
    name: str
    school_id: str | None
    stream_address: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CameraDescriptor":
        return cls(
            id=str(row["id"]),
            name=str(row.get("nome") or row.get("name") or row["id"]),
            school_id=_optional_str(row.get("escola_id", row.get("school_id"))),
            stream_address=str(row.get("url_m3u8") or row.get("stream_address") or ""),
        )


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


class CameraRegistry(Protocol):
    async def list(self, school_id: str) -> list[CameraDescriptor]: ...


class RestCameraRegistry:
    def __init__(self, client: PortalRestClient, *, collection: str = "cameras") -> None:
        self._client = client
        self._collection = collection

    async def list(self, school_id: str) -> list[CameraDescriptor]:
        rows = await self._client.select(self._collection, {"escola_id": school_id}, order="nome")
        return [CameraDescriptor.from_row(row) for row in rows if row.get("url_m3u8")]


class StaticCameraRegistry:
    """Cameras declared in the ``cameras:`` config list."""

    def __init__(self, entries: Iterable[Mapping[str, Any]]) -> None:
        self._cameras = [
            CameraDescriptor.from_row(entry)
            for entry in entries
            if isinstance(entry, Mapping) and entry.get("id")
        ]

    async def list(self, school_id: str) -> list[CameraDescriptor]:
        return [
            camera
            for camera in self._cameras
            if camera.school_id in (None, str(school_id)) and camera.stream_address
        ]
