#!/usr/bin/env python3
"""Asset store backends for pickup photos and consent videos."""
from __future__ import annotations

import argparse
import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Mapping, Optional, Protocol

import aiohttp

from .config import get_cfg
from .errors import StoreError
from .portal_rest import PortalRestClient


class AssetStore(Protocol):
    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str: ...


class RestAssetStore:
    """Stores objects through the portal backend's storage API."""

    def __init__(self, client: PortalRestClient) -> None:
        self._client = client

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        return await self._client.upload(bucket, path, data, content_type)


@dataclass
class LocalDirectoryAssetStore:
    """Writes objects under ``root_dir/<bucket>/<path>``."""

    root_dir: Path
    public_base_url: str = "/assets"

    def _target(self, bucket: str, path: str) -> Path:
        relative = PurePosixPath(bucket) / PurePosixPath(path)
        if relative.is_absolute() or ".." in relative.parts:
            raise StoreError(f"refusing to store outside the asset root: {relative}")
        return self.root_dir.joinpath(*relative.parts)

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        dest = self._target(bucket, path)
        if dest.exists():
            raise StoreError(f"asset already exists: {bucket}/{path}", status=409)
        try:
            await asyncio.to_thread(self._write, dest, data)
        except OSError as exc:
            raise StoreError(f"write failed for {dest}: {exc}") from exc
        logging.getLogger("asset_store").info("Stored %s (%d bytes, %s)", dest, len(data), content_type)
        return f"{self.public_base_url.rstrip('/')}/{bucket}/{path}"

    @staticmethod
    def _write(dest: Path, data: bytes) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = dest.with_name(dest.name + ".tmp")
        tmp_path.write_bytes(data)
        tmp_path.replace(dest)


def load_asset_store(
    cfg: Mapping[str, Any] | None = None,
    *,
    client: Optional[PortalRestClient] = None,
) -> AssetStore:
    cfg = cfg or get_cfg()
    assets_cfg = cfg.get("assets") or {}
    backend = str(assets_cfg.get("backend", "rest")).strip().lower()

    if backend == "local":
        local_cfg = assets_cfg.get("local") or {}
        root_dir = str(local_cfg.get("root_dir", "")).strip()
        if not root_dir:
            raise ValueError("local asset backend requires assets.local.root_dir")
        return LocalDirectoryAssetStore(
            root_dir=Path(root_dir).expanduser().resolve(),
            public_base_url=str(local_cfg.get("public_base_url") or "/assets"),
        )

    if backend == "rest":
        if client is None:
            raise ValueError("rest asset backend requires a portal backend client")
        return RestAssetStore(client)

    raise ValueError(f"unknown asset backend: {backend}")


async def _upload_files(paths: list[str], bucket: str | None, prefix: str) -> None:
    cfg = get_cfg()
    bucket = bucket or str((cfg.get("assets") or {}).get("bucket") or "")
    async with aiohttp.ClientSession() as http:
        client = None
        if (cfg.get("backend") or {}).get("url"):
            client = PortalRestClient.from_cfg(cfg, http)
        store = load_asset_store(cfg, client=client)
        for raw_path in paths:
            path = Path(raw_path)
            if not path.exists():
                print(f"[assets] skip missing file: {path}", flush=True)
                continue
            content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
            target = f"{prefix.strip('/')}/{path.name}" if prefix else path.name
            url = await store.upload(bucket, target, path.read_bytes(), content_type)
            print(f"[assets] uploaded {path} -> {url}", flush=True)


def main() -> None:
    parser = argparse.ArgumentParser(description="Upload files to the configured asset store")
    parser.add_argument("paths", nargs="+", help="Files to upload")
    parser.add_argument("--bucket", default=None, help="Target bucket (defaults to config)")
    parser.add_argument("--prefix", default="", help="Path prefix inside the bucket")
    args = parser.parse_args()
    asyncio.run(_upload_files(args.paths, args.bucket, args.prefix))


if __name__ == "__main__":
    main()
