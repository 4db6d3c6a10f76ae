"""Secure pickup submission: photo upload, consent video upload, pending record.

The three steps run strictly in order because the record needs both public
references. A failure aborts the submission; objects already uploaded stay
in the asset store and are reported on the raised UploadFailure.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, cast

import aiohttp

from .asset_store import AssetStore
from .errors import StoreError, UploadFailure, ValidationError
from .media_capture import MediaAsset
from .record_store import RecordStore


class PickupStatus(str, enum.Enum):
    PENDING = "pendente"
    APPROVED = "aprovada"
    REJECTED = "rejeitada"
    FULFILLED = "realizada"


@dataclass(frozen=True)
class PickupRequest:
    requester_name: str
    requester_document: str
    photo_url: str
    video_url: str
    student_id: str
    school_id: Optional[str] = None
    status: PickupStatus = PickupStatus.PENDING
    created_at: Optional[str] = None
    id: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "nome_buscador": self.requester_name,
            "doc_buscador": self.requester_document,
            "foto_buscador_url": self.photo_url,
            "video_consentimento_url": self.video_url,
            "aluno_id": self.student_id,
            "status": self.status.value,
            "criado_em": self.created_at,
        }
        if self.school_id is not None:
            record["escola_id"] = self.school_id
        return record

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "PickupRequest":
        try:
            status = PickupStatus(row.get("status") or PickupStatus.PENDING.value)
        except ValueError:
            status = PickupStatus.PENDING
        school_id = row.get("escola_id")
        return cls(
            requester_name=str(row.get("nome_buscador") or ""),
            requester_document=str(row.get("doc_buscador") or ""),
            photo_url=str(row.get("foto_buscador_url") or ""),
            video_url=str(row.get("video_consentimento_url") or ""),
            student_id=str(row.get("aluno_id") or ""),
            school_id=str(school_id) if school_id is not None else None,
            status=status,
            created_at=row.get("criado_em"),
            id=str(row["id"]) if row.get("id") is not None else None,
        )


def _blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, MediaAsset):
        return not value.data
    return False


class SecurePickupUploadPipeline:
    def __init__(
        self,
        assets: AssetStore,
        records: RecordStore,
        *,
        bucket: str = "busca-segura",
        photo_prefix: str = "fotos",
        video_prefix: str = "videos",
        collection: str = "busca_segura",
    ) -> None:
        self._assets = assets
        self._records = records
        self.bucket = bucket
        self.photo_prefix = photo_prefix.strip("/")
        self.video_prefix = video_prefix.strip("/")
        self.collection = collection
        self._log = logging.getLogger("pickup_upload")

    @classmethod
    def from_cfg(
        cls, cfg: Mapping[str, Any], assets: AssetStore, records: RecordStore
    ) -> "SecurePickupUploadPipeline":
        assets_cfg = cfg.get("assets") or {}
        records_cfg = cfg.get("records") or {}
        return cls(
            assets,
            records,
            bucket=str(assets_cfg.get("bucket") or "busca-segura"),
            photo_prefix=str(assets_cfg.get("photo_prefix") or "fotos"),
            video_prefix=str(assets_cfg.get("video_prefix") or "videos"),
            collection=str(records_cfg.get("pickup_collection") or "busca_segura"),
        )

    def _object_path(self, prefix: str, student_id: str, asset: MediaAsset) -> str:
        stamp = int(time.time() * 1000)
        return f"{prefix}/{student_id}/{stamp}-{uuid.uuid4().hex[:12]}.{asset.extension}"

    async def submit(
        self,
        requester_name: str,
        requester_document: str,
        photo: Optional[MediaAsset],
        video: Optional[MediaAsset],
        student_id: str,
        *,
        school_id: Optional[str] = None,
    ) -> PickupRequest:
        fields = {
            "requester_name": requester_name,
            "requester_document": requester_document,
            "photo": photo,
            "video": video,
            "student_id": student_id,
        }
        missing = [name for name, value in fields.items() if _blank(value)]
        if missing:
            raise ValidationError(missing)
        photo = cast(MediaAsset, photo)
        video = cast(MediaAsset, video)

        uploaded: List[str] = []
        step = "photo upload"
        try:
            photo_url = await self._assets.upload(
                self.bucket,
                self._object_path(self.photo_prefix, student_id, photo),
                photo.data,
                photo.content_type,
            )
            uploaded.append(photo_url)

            step = "video upload"
            video_url = await self._assets.upload(
                self.bucket,
                self._object_path(self.video_prefix, student_id, video),
                video.data,
                video.content_type,
            )
            uploaded.append(video_url)

            step = "record insert"
            request = PickupRequest(
                requester_name=requester_name.strip(),
                requester_document=requester_document.strip(),
                photo_url=photo_url,
                video_url=video_url,
                student_id=str(student_id),
                school_id=school_id,
                created_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
            )
            row = await self._records.insert(self.collection, request.to_record())
        except (StoreError, aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            if uploaded:
                # TODO: sweep orphaned pickup assets once the backend exposes object deletion.
                self._log.warning(
                    "Pickup submission failed during %s; orphaned assets: %s",
                    step,
                    ", ".join(uploaded),
                )
            else:
                self._log.warning("Pickup submission failed during %s: %s", step, exc)
            raise UploadFailure(step, uploaded, exc) from exc

        created = PickupRequest.from_record({**request.to_record(), **(row or {})})
        self._log.info("Pickup request %s created for student %s", created.id, student_id)
        return created

    async def list_requests(self, school_id: str, *, limit: Optional[int] = None) -> List[PickupRequest]:
        rows = await self._records.select(
            self.collection,
            {"escola_id": school_id},
            order="criado_em",
            descending=True,
            limit=limit,
        )
        return [PickupRequest.from_record(row) for row in rows]
