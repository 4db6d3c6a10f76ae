"""Rewrite camera gateway addresses so secure pages can load them.

Camera gateways serve HLS over plain HTTP. A page served over HTTPS may not
fetch those directly, so known gateways are reached through same-origin
proxy prefixes instead.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence
from urllib.parse import urlsplit

from .errors import MixedContentBlocked


@dataclass(frozen=True)
class ProxyRoute:
    origin: str
    prefix: str

    def matches(self, address: str) -> bool:
        if not address.startswith(self.origin):
            return False
        rest = address[len(self.origin):]
        # ":8001" must not match ":80010"
        return rest == "" or rest[0] in "/?#"

    def rewrite(self, address: str) -> str:
        return self.prefix.rstrip("/") + address[len(self.origin):]


class UnknownOriginPolicy(str, enum.Enum):
    PASSTHROUGH = "passthrough"
    REJECT = "reject"

    @classmethod
    def parse(cls, value: Any) -> "UnknownOriginPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.PASSTHROUGH


DEFAULT_PROXY_ROUTES: tuple[ProxyRoute, ...] = (
    ProxyRoute("http://78.46.228.35:8001", "/camera-proxy-8001"),
    ProxyRoute("http://78.46.228.35:8002", "/camera-proxy-8002"),
)


def translate(
    source_address: str,
    page_is_secure: bool,
    routes: Sequence[ProxyRoute] = DEFAULT_PROXY_ROUTES,
    *,
    policy: UnknownOriginPolicy = UnknownOriginPolicy.PASSTHROUGH,
) -> str:
    if not page_is_secure:
        return source_address
    for route in routes:
        if route.matches(source_address):
            return route.rewrite(source_address)
    if policy is UnknownOriginPolicy.REJECT and source_address.lower().startswith("http://"):
        raise MixedContentBlocked(source_address)
    return source_address


def page_is_secure_for(page_origin: str) -> bool:
    return urlsplit(page_origin or "").scheme.lower() == "https"


def proxy_routes_from_cfg(raw_routes: Iterable[Any] | None) -> tuple[ProxyRoute, ...]:
    if raw_routes is None:
        return DEFAULT_PROXY_ROUTES
    routes: list[ProxyRoute] = []
    for entry in raw_routes:
        if not isinstance(entry, Mapping):
            continue
        origin = str(entry.get("origin") or "").strip().rstrip("/")
        prefix = str(entry.get("prefix") or "").strip()
        if origin and prefix:
            routes.append(ProxyRoute(origin, prefix))
    return tuple(routes)
