#!/usr/bin/env python3
# site_pipeline.py
# -*- coding: utf-8 -*-
"""
The request pipeline for a served site.

Every request runs through the same ordered list of stages:

    cors -> access-log -> compression -> service-worker -> proxy:<prefix>...
         -> history-fallback -> static -> [micro-cache ->] not-found

A stage either terminates the request with a response or passes it on
(possibly with a rewritten path). Once a response exists, the stages that were
entered get a chance to adjust it in reverse order (headers, compression).
The order is load-bearing: proxy rules are checked before history fallback so
API paths are never rewritten to the SPA shell, and history fallback runs
before static resolution so the rewritten path is served as a file.
"""
import gzip
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import httpx
from fastapi import Request, Response
from fastapi.responses import FileResponse
from fastapi.middleware.gzip import GZipMiddleware

from site_config import DEFAULT_FILE, ServerConfig
from site_proxy import ProxyRule, forward_request
from site_static import StaticResolver

access_log = logging.getLogger("site.access")

SERVICE_WORKER_PATH = "/service-worker.js"
NOT_FOUND_BODY = "404 | Page Not Found"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Origin, X-Requested-With, Content-Type, Accept, Range",
}


class Exchange:
    """A request in flight: the Starlette request plus the current (possibly rewritten) path."""

    def __init__(self, request: Request):
        self.request = request
        self.path = request.url.path
        self.original_path = self.path

    @property
    def method(self) -> str:
        return self.request.method

    @property
    def cache_key(self) -> str:
        query = self.request.url.query
        return self.original_path + ("?" + query if query else "")


@dataclass
class StageResult:
    terminated: bool = False
    response: Optional[Response] = None

    @classmethod
    def passthrough(cls) -> "StageResult":
        return cls()

    @classmethod
    def respond(cls, response: Response) -> "StageResult":
        return cls(terminated=True, response=response)


class Stage:
    """One step of the pipeline. Subclasses override handle() and/or finalize()."""

    name = "stage"

    async def handle(self, exchange: Exchange) -> StageResult:
        return StageResult.passthrough()

    async def finalize(self, exchange: Exchange, response: Response) -> Response:
        return response


class CorsStage(Stage):
    name = "cors"

    async def finalize(self, exchange, response):
        for key, value in CORS_HEADERS.items():
            response.headers[key] = value
        return response


class AccessLogStage(Stage):
    name = "access-log"

    async def handle(self, exchange):
        client = exchange.request.client
        access_log.info("%s %s %s", exchange.method, exchange.cache_key, client.host if client else "-")
        return StageResult.passthrough()


class GZipFileResponse(Response):
    """A file response streamed through Starlette's GZipMiddleware, chunk by chunk."""

    def __init__(self, inner: FileResponse, compresslevel: int):
        self.inner = inner
        self.compresslevel = compresslevel
        self.status_code = inner.status_code
        self.background = None
        # Shared with the inner response so later header edits reach the wire.
        self.raw_headers = inner.raw_headers

    async def __call__(self, scope, receive, send):
        middleware = GZipMiddleware(self.inner, minimum_size=0, compresslevel=self.compresslevel)
        await middleware(scope, receive, send)
        if self.background is not None:
            await self.background()


class CompressionStage(Stage):
    """Gzips response bodies (threshold 0 bytes) for clients that accept gzip."""

    name = "compression"

    def __init__(self, level: int = 6, minimum_size: int = 0):
        self.level = level
        self.minimum_size = minimum_size

    @staticmethod
    def accepts_gzip(request: Request) -> bool:
        qualities = {}
        for part in request.headers.get("accept-encoding", "").split(","):
            coding, _, params = part.strip().partition(";")
            quality = 1.0
            for param in params.split(";"):
                key, _, value = param.strip().partition("=")
                if key.strip().lower() == "q":
                    try:
                        quality = float(value)
                    except ValueError:
                        quality = 0.0
            qualities[coding.strip().lower()] = quality
        # An explicit gzip entry overrides the wildcard.
        return qualities.get("gzip", qualities.get("*", 0.0)) > 0

    async def finalize(self, exchange, response):
        if (
            exchange.method == "HEAD"
            or response.status_code in (204, 304)
            or "content-encoding" in response.headers
            or not self.accepts_gzip(exchange.request)
        ):
            return response
        if isinstance(response, FileResponse):
            # Byte ranges are served from the file as stored.
            if "range" in exchange.request.headers:
                return response
            return GZipFileResponse(response, compresslevel=self.level)

        body = getattr(response, "body", None)
        if body is None or len(body) <= self.minimum_size:
            return response
        compressed = gzip.compress(body, compresslevel=self.level)
        response.body = compressed
        response.headers["Content-Encoding"] = "gzip"
        response.headers["Content-Length"] = str(len(compressed))
        vary = response.headers.get("vary")
        if not vary:
            response.headers["Vary"] = "Accept-Encoding"
        elif "accept-encoding" not in vary.lower():
            response.headers["Vary"] = vary + ", Accept-Encoding"
        return response


class ServiceWorkerStage(Stage):
    """Serves /service-worker.js from the site root, always with max-age=0."""

    name = "service-worker"

    def __init__(self, root: str):
        self.resolver = StaticResolver(root, max_age=0, directory_index=None)

    async def handle(self, exchange):
        if exchange.path != SERVICE_WORKER_PATH:
            return StageResult.passthrough()
        response = await self.resolver.resolve(exchange.method, SERVICE_WORKER_PATH)
        if response is None:
            return StageResult.passthrough()
        return StageResult.respond(response)


class ProxyStage(Stage):
    """Forwards requests under one rule's prefix. One stage per rule, in rule order."""

    def __init__(self, rule: ProxyRule, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.rule = rule
        self.transport = transport
        self.name = f"proxy:{rule.path}"

    async def handle(self, exchange):
        if not self.rule.matches(exchange.path):
            return StageResult.passthrough()
        response = await forward_request(self.rule, exchange.request, exchange.path, transport=self.transport)
        return StageResult.respond(response)


class HistoryFallbackStage(Stage):
    """
    Rewrites navigation requests for paths that are not files to the entry document,
    so client-side routing can handle them.
    """

    name = "history-fallback"

    def __init__(self, resolver: StaticResolver, index_path: str = "/index.html"):
        self.resolver = resolver
        self.index_path = index_path

    @staticmethod
    def is_navigation(request: Request) -> bool:
        if request.method not in ("GET", "HEAD"):
            return False
        accept = request.headers.get("accept")
        if not accept:
            return False
        accept = accept.lower()
        if accept.startswith("application/json"):
            return False
        return "text/html" in accept or "*/*" in accept

    async def handle(self, exchange):
        if not self.is_navigation(exchange.request):
            return StageResult.passthrough()
        last_segment = exchange.path.rsplit("/", 1)[-1]
        if "." in last_segment and exchange.path != self.index_path:
            return StageResult.passthrough()
        if self.resolver.is_file(exchange.path):
            return StageResult.passthrough()
        logging.debug(f"History fallback: {exchange.path} -> {self.index_path}")
        exchange.path = self.index_path
        return StageResult.passthrough()


class StaticStage(Stage):
    name = "static"

    def __init__(self, resolver: StaticResolver):
        self.resolver = resolver

    async def handle(self, exchange):
        response = await self.resolver.resolve(exchange.method, exchange.path)
        if response is None:
            return StageResult.passthrough()
        return StageResult.respond(response)


class NotFoundStage(Stage):
    name = "not-found"

    def __init__(self, silent: bool = False):
        self.silent = silent

    async def handle(self, exchange):
        if not self.silent:
            logging.info(f"404 {exchange.method} {exchange.cache_key}")
        return StageResult.respond(Response(content=NOT_FOUND_BODY, status_code=404, media_type="text/html"))


# (expires_at, status_code, headers, body)
MicroCacheEntry = Tuple[float, int, List[Tuple[bytes, bytes]], bytes]


class MicroCache:
    """
    Time-bounded response store keyed by path+query. Entries expire individually
    after `ttl` seconds; there is no capacity limit. Concurrent misses for the
    same key may both populate it (last write wins).
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[str, MicroCacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Response]:
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry[0] <= now:
                del self._entries[key]
                return None
        _, status_code, raw_headers, body = entry
        response = Response(content=body, status_code=status_code)
        response.raw_headers = list(raw_headers)
        return response

    def put(self, key: str, response: Response):
        entry = (self.clock() + self.ttl, response.status_code, list(response.raw_headers), bytes(response.body))
        with self._lock:
            self._entries[key] = entry
            self._purge_expired()

    def _purge_expired(self):
        now = self.clock()
        for key in [k for k, e in self._entries.items() if e[0] <= now]:
            del self._entries[key]

    def __len__(self):
        with self._lock:
            return len(self._entries)


class MicroCacheStage(Stage):
    """Answers from the micro-cache within the TTL; on a miss runs the wrapped stage and stores its response."""

    def __init__(self, inner: Stage, cache: MicroCache):
        self.inner = inner
        self.cache = cache
        self.name = f"micro-cache({inner.name})"

    async def handle(self, exchange):
        key = exchange.cache_key
        cached = self.cache.get(key)
        if cached is not None:
            return StageResult.respond(cached)
        result = await self.inner.handle(exchange)
        if result.terminated and result.response is not None:
            self.cache.put(key, result.response)
        return result


class Pipeline:
    """An ordered list of stages applied identically to every request."""

    def __init__(self, stages: List[Stage]):
        self.stages = list(stages)

    def describe(self) -> List[str]:
        return [stage.name for stage in self.stages]

    async def dispatch(self, request: Request) -> Response:
        exchange = Exchange(request)
        entered: List[Stage] = []
        response = None
        for stage in self.stages:
            entered.append(stage)
            result = await stage.handle(exchange)
            if result.terminated:
                response = result.response
                break
        if response is None:
            raise RuntimeError(f"No stage answered {exchange.method} {exchange.path}")
        for stage in reversed(entered):
            response = await stage.finalize(exchange, response)
        return response


def build_pipeline(config: ServerConfig, proxy_transport: Optional[httpx.AsyncBaseTransport] = None,
                   clock: Callable[[], float] = time.monotonic) -> Pipeline:
    """Assembles the stages for a configuration, in their fixed order."""
    stages: List[Stage] = []
    if config.CORS:
        stages.append(CorsStage())
    if not config.SILENT:
        stages.append(AccessLogStage())
    if config.GZIP:
        stages.append(CompressionStage())

    if os.path.isfile(os.path.join(config.SITE_FOLDER, SERVICE_WORKER_PATH.lstrip("/"))):
        stages.append(ServiceWorkerStage(config.SITE_FOLDER))

    for rule in config.PROXY_RULES:
        stages.append(ProxyStage(rule, transport=proxy_transport))

    # Directories keep their own index unless history mode serves a different entry document.
    spa_entry = config.HISTORY_FALLBACK and config.DEFAULT_FILE.lstrip("/") != DEFAULT_FILE
    resolver = StaticResolver(
        config.SITE_FOLDER,
        max_age=config.CACHE_MAX_AGE,
        entry_file=config.entry_file,
        directory_index=None if spa_entry else config.DEFAULT_FILE,
    )
    if config.HISTORY_FALLBACK:
        stages.append(HistoryFallbackStage(resolver, index_path=config.entry_path))
    stages.append(StaticStage(resolver))

    not_found = NotFoundStage(silent=config.SILENT)
    if config.MICRO_CACHE_SECONDS:
        stages.append(MicroCacheStage(not_found, MicroCache(config.MICRO_CACHE_SECONDS, clock=clock)))
    else:
        stages.append(not_found)
    return Pipeline(stages)
