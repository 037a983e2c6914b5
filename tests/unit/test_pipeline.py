"""
Unit tests for the request pipeline: stage order, history fallback, cache
headers, compression, CORS, service worker and the micro-cache.
"""

import gzip

import pytest
from fastapi import Request, Response
from fastapi.testclient import TestClient

from site_pipeline import (
    NOT_FOUND_BODY,
    CompressionStage,
    MicroCache,
    MicroCacheStage,
    NotFoundStage,
    Pipeline,
    build_pipeline,
)
from site_proxy import ProxyRule
from site_server import create_app
from site_static import NO_CACHE_HEADERS

from conftest import APP_JS, INDEX_HTML

HTML_ACCEPT = {"Accept": "text/html,application/xhtml+xml,*/*;q=0.8"}


def assert_no_cache(response):
    for key, value in NO_CACHE_HEADERS.items():
        assert response.headers[key] == value


class CountingNotFound(NotFoundStage):
    def __init__(self):
        super().__init__(silent=True)
        self.calls = 0

    async def handle(self, exchange):
        self.calls += 1
        return await super().handle(exchange)


class TestBuildPipeline:
    """Tests for stage assembly and ordering."""

    def test_full_order(self, make_config, site_dir):
        (site_dir / "service-worker.js").write_text("self.addEventListener('fetch', () => {});")
        config = make_config(
            CORS=True, SILENT=False, GZIP=True, HISTORY_FALLBACK=True, MICRO_CACHE_SECONDS=1,
            PROXY_RULES=(ProxyRule("/api", "http://upstream"), ProxyRule("/auth", "http://auth")),
        )

        assert build_pipeline(config).describe() == [
            "cors",
            "access-log",
            "compression",
            "service-worker",
            "proxy:/api",
            "proxy:/auth",
            "history-fallback",
            "static",
            "micro-cache(not-found)",
        ]

    def test_minimal_order(self, make_config):
        config = make_config(GZIP=False)
        assert build_pipeline(config).describe() == ["static", "not-found"]

    def test_empty_pipeline_is_an_error(self):

        client = TestClient(create_app(Pipeline([])), raise_server_exceptions=False)
        assert client.get("/").status_code == 500


class TestNotFound:
    """Requests that match nothing end in exactly one fixed 404."""

    @pytest.mark.parametrize("path", ["/missing.js", "/nested/missing.css", "/docs/nope.html"])
    def test_missing_file(self, make_config, make_client, path):
        client = make_client(make_config())

        response = client.get(path)

        assert response.status_code == 404
        assert response.text == NOT_FOUND_BODY
        assert response.headers["content-type"].startswith("text/html")

    def test_dotted_path_not_rewritten_with_history(self, make_config, make_client):
        client = make_client(make_config(HISTORY_FALLBACK=True))

        response = client.get("/assets/missing.js", headers=HTML_ACCEPT)

        assert response.status_code == 404
        assert response.text == NOT_FOUND_BODY

    def test_percent_in_file_name(self, make_config, make_client, site_dir):
        (site_dir / "a%20b.txt").write_text("literal percent")
        client = make_client(make_config())

        response = client.get("/a%2520b.txt")

        assert response.status_code == 200
        assert response.text == "literal percent"
        assert client.get("/a%20b.txt").status_code == 404

    def test_traversal_is_not_found(self, make_config, make_client, site_dir):
        (site_dir.parent / "secret.txt").write_text("secret")
        client = make_client(make_config())

        assert client.get("/%2e%2e/secret.txt").status_code == 404


class TestStaticCaching:
    """Cache-Control policy as seen through the pipeline."""

    @pytest.mark.parametrize("max_age", [0, 60, 86400])
    def test_asset_max_age_matches_config(self, make_config, make_client, max_age):
        client = make_client(make_config(CACHE_MAX_AGE=max_age))

        response = client.get("/style.css")

        assert response.status_code == 200
        assert response.headers["cache-control"] == f"max-age={max_age}"

    @pytest.mark.parametrize("path", ["/", "/index.html"])
    def test_entry_document_never_cached(self, make_config, make_client, path):
        client = make_client(make_config(CACHE_MAX_AGE=86400))

        response = client.get(path)

        assert response.status_code == 200
        assert response.content == INDEX_HTML
        assert_no_cache(response)

    def test_custom_entry_document(self, make_config, make_client):
        client = make_client(make_config(DEFAULT_FILE="docs/guide.html", HISTORY_FALLBACK=True))

        response = client.get("/some/route", headers=HTML_ACCEPT)

        assert response.status_code == 200
        assert response.text == "<h1>guide</h1>"
        assert_no_cache(response)


class TestHistoryFallback:
    """SPA navigation requests are rewritten to the entry document."""

    def test_navigation_rewritten_to_entry(self, make_config, make_client):
        client = make_client(make_config(PORT=4000, HISTORY_FALLBACK=True, DEFAULT_FILE="index.html"))

        response = client.get("/dashboard/settings", headers=HTML_ACCEPT)

        assert response.status_code == 200
        assert response.content == INDEX_HTML
        assert_no_cache(response)

    def test_rewrite_is_idempotent(self, make_config, make_client):
        client = make_client(make_config(HISTORY_FALLBACK=True))

        direct = client.get("/index.html", headers=HTML_ACCEPT)
        rewritten = client.get("/any/unmatched/path", headers=HTML_ACCEPT)

        assert direct.status_code == rewritten.status_code == 200
        assert direct.content == rewritten.content == INDEX_HTML

    def test_existing_files_are_served_as_is(self, make_config, make_client):
        client = make_client(make_config(HISTORY_FALLBACK=True))

        response = client.get("/app.js", headers=HTML_ACCEPT)

        assert response.content == APP_JS

    def test_directories_are_rewritten(self, make_config, make_client):
        client = make_client(make_config(HISTORY_FALLBACK=True))

        response = client.get("/docs/", headers=HTML_ACCEPT)

        assert response.content == INDEX_HTML

    def test_root_without_accept_uses_directory_index(self, make_config, make_client):
        client = make_client(make_config(HISTORY_FALLBACK=True))

        response = client.get("/", headers={"Accept": ""})

        assert response.status_code == 200
        assert response.content == INDEX_HTML

    def test_directory_index_kept_for_non_navigation(self, make_config, make_client):
        client = make_client(make_config(HISTORY_FALLBACK=True))

        response = client.get("/docs/", headers={"Accept": "application/json"})

        assert response.status_code == 200
        assert response.text == "<h1>docs</h1>"

    def test_distinct_entry_suppresses_directory_index(self, make_config, make_client):
        client = make_client(make_config(HISTORY_FALLBACK=True, DEFAULT_FILE="docs/guide.html"))

        assert client.get("/docs/", headers={"Accept": "application/json"}).status_code == 404
        assert client.get("/docs/", headers=HTML_ACCEPT).text == "<h1>guide</h1>"

    def test_json_requests_are_not_rewritten(self, make_config, make_client):
        client = make_client(make_config(HISTORY_FALLBACK=True))

        response = client.get("/dashboard", headers={"Accept": "application/json"})

        assert response.status_code == 404

    def test_post_is_not_rewritten(self, make_config, make_client):
        client = make_client(make_config(HISTORY_FALLBACK=True))

        response = client.post("/dashboard", headers=HTML_ACCEPT)

        assert response.status_code == 404

    def test_disabled_by_default(self, make_config, make_client):
        client = make_client(make_config())

        response = client.get("/dashboard/settings", headers=HTML_ACCEPT)

        assert response.status_code == 404


class TestCompression:
    """Gzip stage."""

    def test_gzips_when_accepted(self, make_config, make_client):
        client = make_client(make_config(GZIP=True))

        response = client.get("/app.js", headers={"Accept-Encoding": "gzip"})

        assert response.headers["content-encoding"] == "gzip"
        assert "Accept-Encoding" in response.headers["vary"]
        # httpx decodes transparently
        assert response.content == APP_JS

    def test_not_found_body_is_compressed_too(self, make_config, make_client):
        client = make_client(make_config(GZIP=True))

        response = client.get("/missing.txt", headers={"Accept-Encoding": "gzip"})

        assert response.headers["content-encoding"] == "gzip"
        assert response.text == NOT_FOUND_BODY

    def test_identity_is_left_alone(self, make_config, make_client):
        client = make_client(make_config(GZIP=True))

        response = client.get("/app.js", headers={"Accept-Encoding": "identity"})

        assert "content-encoding" not in response.headers
        assert response.content == APP_JS

    def test_disabled(self, make_config, make_client):
        client = make_client(make_config(GZIP=False))

        response = client.get("/app.js", headers={"Accept-Encoding": "gzip"})

        assert "content-encoding" not in response.headers

    @pytest.mark.parametrize("accept_encoding,expected", [
        ("gzip", True),
        ("gzip;q=0.5, identity", True),
        ("*", True),
        ("gzip;q=0", False),
        ("gzip;q=0.0, identity", False),
        ("gzip; q=0.00", False),
        ("gzip;q=0, *", False),
        ("br, identity", False),
        ("", False),
    ])
    def test_accepts_gzip(self, accept_encoding, expected):
        request = Request({"type": "http", "headers": [(b"accept-encoding", accept_encoding.encode())]})
        assert CompressionStage.accepts_gzip(request) is expected

    def test_zero_quality_is_refused(self, make_config, make_client):
        client = make_client(make_config(GZIP=True))

        response = client.get("/app.js", headers={"Accept-Encoding": "gzip;q=0.0, identity"})

        assert "content-encoding" not in response.headers
        assert response.content == APP_JS

    def test_large_file_is_streamed_compressed(self, make_config, make_client, site_dir):
        payload = b"0123456789abcdef" * 20000
        (site_dir / "large.txt").write_bytes(payload)
        client = make_client(make_config(GZIP=True))

        response = client.get("/large.txt", headers={"Accept-Encoding": "gzip"})

        assert response.headers["content-encoding"] == "gzip"
        assert response.content == payload

    def test_range_request_is_served_uncompressed(self, make_config, make_client):
        client = make_client(make_config(GZIP=True))

        response = client.get("/app.js", headers={"Accept-Encoding": "gzip", "Range": "bytes=0-9"})

        assert response.status_code == 206
        assert "content-encoding" not in response.headers
        assert response.content == APP_JS[:10]

    def test_precompressed_not_recompressed(self, make_config, make_client, site_dir):
        payload = gzip.compress(b"var precompressed = true;")
        (site_dir / "bundle.js.gz").write_bytes(payload)
        client = make_client(make_config(GZIP=True))

        response = client.get("/bundle.js.gz", headers={"Accept-Encoding": "gzip"})

        assert response.headers["content-encoding"] == "gzip"
        assert response.content == b"var precompressed = true;"


class TestCors:
    """CORS header injection."""

    def test_headers_on_every_response(self, make_config, make_client):
        client = make_client(make_config(CORS=True))

        for path in ("/app.js", "/missing.js"):
            response = client.get(path)
            assert response.headers["access-control-allow-origin"] == "*"
            assert "Range" in response.headers["access-control-allow-headers"]

    def test_disabled(self, make_config, make_client):
        client = make_client(make_config())
        assert "access-control-allow-origin" not in client.get("/app.js").headers


class TestServiceWorker:
    """service-worker.js is served with a zero max-age regardless of cache policy."""

    def test_zero_max_age(self, make_config, make_client, site_dir):
        (site_dir / "service-worker.js").write_text("// sw")
        client = make_client(make_config(CACHE_MAX_AGE=86400))

        response = client.get("/service-worker.js")

        assert response.status_code == 200
        assert response.headers["cache-control"] == "max-age=0"

    def test_absent_worker_is_not_mounted(self, make_config, make_client):
        config = make_config()

        assert "service-worker" not in build_pipeline(config).describe()
        assert make_client(config).get("/service-worker.js").status_code == 404


class TestMicroCache:
    """Micro-cache in front of the fallback 404."""

    def test_hit_within_ttl_is_identical(self, make_config, make_client, clock):
        client = make_client(make_config(MICRO_CACHE_SECONDS=5, GZIP=False))

        first = client.get("/missing.js?v=1")
        clock.advance(4)
        second = client.get("/missing.js?v=1")

        assert first.status_code == second.status_code == 404
        assert first.content == second.content
        assert first.headers["content-type"] == second.headers["content-type"]

    def test_expiry_reexecutes_terminal_stage(self, clock):
        inner = CountingNotFound()
        stage = MicroCacheStage(inner, MicroCache(2, clock=clock))
        pipeline = Pipeline([stage])
        client = TestClient(create_app(pipeline))

        client.get("/gone")
        client.get("/gone")
        assert inner.calls == 1

        clock.advance(2.5)
        client.get("/gone")
        assert inner.calls == 2

    def test_keyed_by_path_and_query(self, clock):
        inner = CountingNotFound()
        pipeline = Pipeline([MicroCacheStage(inner, MicroCache(10, clock=clock))])
        client = TestClient(create_app(pipeline))

        client.get("/gone?a=1")
        client.get("/gone?a=2")
        client.get("/gone?a=1")
        assert inner.calls == 2

    def test_cached_copy_is_not_mutated_by_compression(self, make_config, make_client):
        client = make_client(make_config(MICRO_CACHE_SECONDS=5, GZIP=True))

        zipped = client.get("/missing.js", headers={"Accept-Encoding": "gzip"})
        plain = client.get("/missing.js", headers={"Accept-Encoding": "identity"})

        assert zipped.headers["content-encoding"] == "gzip"
        assert "content-encoding" not in plain.headers
        assert plain.text == NOT_FOUND_BODY

    def test_expired_entries_are_dropped(self, clock):
        cache = MicroCache(1, clock=clock)
        cache.put("/a", Response(content=b"a", status_code=404))
        assert cache.get("/a") is not None

        clock.advance(1)
        assert cache.get("/a") is None
        assert len(cache) == 0
