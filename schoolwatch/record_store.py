"""Record store used for pickup requests (and the CRUD screens outside this core)."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Protocol

from .portal_rest import PortalRestClient


class RecordStore(Protocol):
    async def insert(self, collection: str, record: Mapping[str, Any]) -> Dict[str, Any]: ...

    async def update(
        self, collection: str, match: Mapping[str, Any], values: Mapping[str, Any]
    ) -> List[Dict[str, Any]]: ...

    async def select(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        order: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...


class RestRecordStore:
    def __init__(self, client: PortalRestClient) -> None:
        self._client = client

    async def insert(self, collection: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._client.insert(collection, record)

    async def update(
        self, collection: str, match: Mapping[str, Any], values: Mapping[str, Any]
    ) -> List[Dict[str, Any]]:
        return await self._client.update(collection, match, values)

    async def select(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        order: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        return await self._client.select(
            collection, filters, order=order, descending=descending, limit=limit
        )
