"""
pytest configuration and fixtures.
"""

import socket
import sys
from pathlib import Path
from typing import Callable, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

# Make the top-level modules importable without installing
sys.path.insert(0, str(Path(__file__).parent.parent))

from site_config import ServerConfig
from site_pipeline import build_pipeline
from site_server import create_app

INDEX_HTML = b"<!doctype html><html><body><div id=app></div></body></html>"
APP_JS = b"console.log('app');\n" * 20


class FakeClock:
    """Manually advanced monotonic clock for the micro-cache."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def site_dir(tmp_path: Path) -> Path:
    """A small site folder: entry document, assets and a nested directory."""
    root = tmp_path / "site"
    root.mkdir()
    (root / "index.html").write_bytes(INDEX_HTML)
    (root / "app.js").write_bytes(APP_JS)
    (root / "style.css").write_text("body { margin: 0; }")
    docs = root / "docs"
    docs.mkdir()
    (docs / "index.html").write_text("<h1>docs</h1>")
    (docs / "guide.html").write_text("<h1>guide</h1>")
    return root


@pytest.fixture
def make_config(site_dir: Path) -> Callable[..., ServerConfig]:
    """Factory for configs rooted at site_dir; keyword arguments override fields."""
    def factory(**overrides) -> ServerConfig:
        overrides.setdefault("SITE_FOLDER", str(site_dir))
        overrides.setdefault("SILENT", True)
        overrides.setdefault("MICRO_CACHE_SECONDS", 0)
        return ServerConfig(**overrides)
    return factory


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_client(clock: FakeClock) -> Callable[..., TestClient]:
    """TestClient driving the full pipeline for a config."""
    def factory(config: ServerConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> TestClient:
        pipeline = build_pipeline(config, proxy_transport=transport, clock=clock)
        return TestClient(create_app(pipeline))
    return factory


@pytest.fixture
def free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]
