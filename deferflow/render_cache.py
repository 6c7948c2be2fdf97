"""
Render cache: look up a rendered response body, or render and store it.

The cache only stays correct if the caller's key changes whenever the data
behind the response changes. Use ``collection_cache_key`` for lists (count
plus newest ``updated_at``) and ``record_cache_key`` for single records.

Backend failures never reach the caller: a failed read is a miss and a failed
write is logged and dropped.
"""

import hashlib
import inspect
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, NamedTuple, Optional, Protocol, Union

from starlette.requests import Request
from starlette.responses import Response

from . import metrics
from .logging_config import get_logger

logger = get_logger(__name__)

HIT = "hit"
MISS = "miss"

Producer = Callable[[], Union[Any, Awaitable[Any]]]


class CacheBackend(Protocol):
    async def read(self, key: str) -> Optional[bytes]:
        ...

    async def write(self, key: str, value: bytes, ttl: Optional[int] = None) -> bool:
        ...


class RedisCacheBackend:
    """Cache backend over a redis.asyncio client. Fails soft in both directions."""

    def __init__(self, redis_client):
        self.redis = redis_client

    async def read(self, key: str) -> Optional[bytes]:
        try:
            raw = await self.redis.get(key)
        except Exception as exc:
            metrics.render_cache_errors_total.labels(op="read").inc()
            logger.warning("render_cache_read_failed", key=key, error=str(exc))
            return None
        if raw is None:
            return None
        return raw.encode("utf-8") if isinstance(raw, str) else raw

    async def write(self, key: str, value: bytes, ttl: Optional[int] = None) -> bool:
        try:
            await self.redis.set(key, value, ex=ttl)
            return True
        except Exception as exc:
            metrics.render_cache_errors_total.labels(op="write").inc()
            logger.warning("render_cache_write_failed", key=key, error=str(exc))
            return False


class CachedRender(NamedTuple):
    body: bytes
    outcome: str


def _key_part(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return "/".join(_key_part(v) for v in value)
    return str(value)


def template_digest(template: Union[str, Path, None]) -> str:
    """Short digest of a template's source; a Path is read from disk."""
    if template is None:
        return "-"
    source = template.read_bytes() if isinstance(template, Path) else template.encode("utf-8")
    return hashlib.sha256(source).hexdigest()[:12]


def collection_cache_key(records: Iterable[Any]) -> str:
    records = list(records)
    if not records:
        return "empty"
    newest = max(r.updated_at for r in records)
    return f"{len(records)}-{_key_part(newest)}"


def record_cache_key(record: Any) -> str:
    return f"{record.id}-{_key_part(record.updated_at)}"


def _encode(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value, default=str, separators=(",", ":")).encode("utf-8")


class RenderCache:
    def __init__(self, backend: CacheBackend, namespace: str = "views", default_ttl: Optional[int] = 3600):
        self.backend = backend
        self.namespace = namespace
        self.default_ttl = default_ttl

    def effective_key(self, view: str, key: Any, template: Union[str, Path, None] = None) -> str:
        material = hashlib.sha1(_key_part(key).encode("utf-8")).hexdigest()
        return f"{self.namespace}:{view}:{material}:{template_digest(template)}"

    async def lookup(
        self,
        key: Any,
        producer: Producer,
        *,
        view: str,
        template: Union[str, Path, None] = None,
        ttl: Optional[int] = None,
    ) -> CachedRender:
        cache_key = self.effective_key(view, key, template)

        try:
            cached = await self.backend.read(cache_key)
        except Exception as exc:
            metrics.render_cache_errors_total.labels(op="read").inc()
            logger.warning("render_cache_read_failed", key=cache_key, error=str(exc))
            cached = None
        if cached is not None:
            metrics.render_cache_requests_total.labels(view=view, outcome=HIT).inc()
            return CachedRender(cached, HIT)

        value = producer()
        if inspect.isawaitable(value):
            value = await value
        body = _encode(value)

        try:
            await self.backend.write(cache_key, body, ttl if ttl is not None else self.default_ttl)
        except Exception as exc:
            metrics.render_cache_errors_total.labels(op="write").inc()
            logger.warning("render_cache_write_failed", key=cache_key, error=str(exc))
        metrics.render_cache_requests_total.labels(view=view, outcome=MISS).inc()
        return CachedRender(body, MISS)

    async def fetch_or_render(
        self,
        key: Any,
        producer: Producer,
        *,
        view: str,
        template: Union[str, Path, None] = None,
        ttl: Optional[int] = None,
    ) -> bytes:
        rendered = await self.lookup(key, producer, view=view, template=template, ttl=ttl)
        return rendered.body


async def cached_response(
    cache: RenderCache,
    request: Request,
    key: Any,
    producer: Producer,
    *,
    template: Union[str, Path, None] = None,
    media_type: str = "application/json",
    ttl: Optional[int] = None,
) -> Response:
    """Serve ``producer``'s output through the cache, tagging the response with X-Cache."""
    route = request.scope.get("route")
    view = f"{request.method} {getattr(route, 'path', request.url.path)}"
    rendered = await cache.lookup(key, producer, view=view, template=template, ttl=ttl)
    return Response(content=rendered.body, media_type=media_type, headers={"X-Cache": rendered.outcome})
