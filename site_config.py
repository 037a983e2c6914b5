#!/usr/bin/env python3
# site_config.py
# -*- coding: utf-8 -*-
"""
Server configuration for a served site folder.

The configuration is resolved once at startup (command-line options, then the
process environment, then built-in defaults) and is read-only afterwards.
Nothing below the launcher looks at os.environ.
"""
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

VERSION = "2.0.0"

DEFAULT_PORT = 4000
DEFAULT_HOSTNAME = "0.0.0.0"
DEFAULT_CACHE_MAX_AGE = 86400
DEFAULT_MICRO_CACHE_SECONDS = 1
DEFAULT_FILE = "index.html"


class SiteConfigError(Exception):
    """A configuration problem the server cannot start with."""


@dataclass(frozen=True)
class ServerConfig:
    # Absolute path of the folder containing the web-site files.
    SITE_FOLDER: str
    # TCP port to listen on.
    PORT: int = DEFAULT_PORT
    # Interface to bind.
    HOSTNAME: str = DEFAULT_HOSTNAME
    # True to gzip response bodies for clients that accept it.
    GZIP: bool = True
    # True to suppress access and 404 logging.
    SILENT: bool = False
    # Cache-Control max-age (seconds) for static assets other than the entry document.
    CACHE_MAX_AGE: int = DEFAULT_CACHE_MAX_AGE
    # Micro-cache lifetime in seconds for the fallback response. 0 disables it.
    MICRO_CACHE_SECONDS: float = DEFAULT_MICRO_CACHE_SECONDS
    # True to rewrite unmatched navigation requests to the entry document (SPA routing).
    HISTORY_FALLBACK: bool = False
    # Entry document, relative to SITE_FOLDER.
    DEFAULT_FILE: str = DEFAULT_FILE
    # True for HTTPS, else plain HTTP.
    SECURE_SITE: bool = False
    # True to add permissive CORS headers to every response.
    CORS: bool = False
    # Optional user-supplied TLS material. Both must be set to take effect.
    KEY_FILE: Optional[str] = None
    CERT_FILE: Optional[str] = None
    # Set to True to force regeneration of the generated certificate on startup, even if fresh.
    FORCE_CERTIFICATE_REGENERATION: bool = False
    # Ordered site_proxy.ProxyRule entries; the first matching prefix wins.
    PROXY_RULES: Tuple[Any, ...] = field(default_factory=tuple)
    # Application version number, shown in the startup summary.
    VERSION: str = VERSION

    @property
    def entry_path(self) -> str:
        """URL path of the entry document, e.g. '/index.html'."""
        return "/" + self.DEFAULT_FILE.replace(os.sep, "/").lstrip("/")

    @property
    def entry_file(self) -> str:
        """Absolute filesystem path of the entry document."""
        return os.path.normpath(os.path.join(self.SITE_FOLDER, self.DEFAULT_FILE.lstrip("/")))

    @property
    def uses_user_certificate(self) -> bool:
        return bool(self.KEY_FILE and self.CERT_FILE)

    @property
    def scheme(self) -> str:
        return "https" if self.SECURE_SITE else "http"

    def enabled_features(self) -> Dict[str, Any]:
        """Feature summary for the startup log."""
        return {
            "gzip": self.GZIP,
            "cors": self.CORS,
            "history": self.HISTORY_FALLBACK,
            "https": self.SECURE_SITE,
            "cache": self.CACHE_MAX_AGE,
            "micro-cache": self.MICRO_CACHE_SECONDS or False,
            "proxy-rules": len(self.PROXY_RULES),
        }


def _non_negative(name: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise SiteConfigError(f"{name} must be a number, got {value!r}")
    if number < 0:
        raise SiteConfigError(f"{name} must not be negative, got {value!r}")
    return number


def resolve_config(options: Mapping[str, Any], environ: Optional[Mapping[str, str]] = None) -> ServerConfig:
    """
    Builds the immutable ServerConfig.

    Args:
        options: parsed command-line values; missing or None entries fall back.
        environ: process environment consulted for PORT and HOST overrides.

    Raises:
        SiteConfigError: the folder is not a directory, a number is invalid, or
            the proxy rules file is missing/malformed.
    """
    environ = environ if environ is not None else {}

    def option(name: str, default: Any = None) -> Any:
        value = options.get(name)
        return default if value is None else value

    site_folder = os.path.abspath(os.path.expanduser(option("folder", ".")))
    if not os.path.isdir(site_folder):
        raise SiteConfigError(f"Site folder does not exist or is not a directory: {site_folder}")

    port = option("port", environ.get("PORT") or DEFAULT_PORT)
    try:
        port = int(port)
    except (TypeError, ValueError):
        raise SiteConfigError(f"Port must be an integer, got {port!r}")

    cache_max_age = int(_non_negative("Cache max-age", option("cache", DEFAULT_CACHE_MAX_AGE)))
    micro_cache = option("micro_cache", DEFAULT_MICRO_CACHE_SECONDS)
    micro_cache = 0 if micro_cache is False else _non_negative("Micro-cache seconds", micro_cache)

    proxy_file = option("proxy")
    if proxy_file:
        from site_proxy import load_proxy_rules
        proxy_rules = load_proxy_rules(proxy_file)
    else:
        proxy_rules = ()

    key_file = option("key")
    cert_file = option("cert")

    return ServerConfig(
        SITE_FOLDER=site_folder,
        PORT=port,
        HOSTNAME=option("address", environ.get("HOST") or DEFAULT_HOSTNAME),
        GZIP=bool(option("gzip", True)),
        SILENT=bool(option("silent", False)),
        CACHE_MAX_AGE=cache_max_age,
        MICRO_CACHE_SECONDS=micro_cache,
        HISTORY_FALLBACK=bool(option("history", False)),
        DEFAULT_FILE=option("index", DEFAULT_FILE).lstrip("/") or DEFAULT_FILE,
        SECURE_SITE=bool(option("secure", False)),
        CORS=bool(option("cors", False)),
        KEY_FILE=os.path.abspath(os.path.expanduser(key_file)) if key_file else None,
        CERT_FILE=os.path.abspath(os.path.expanduser(cert_file)) if cert_file else None,
        FORCE_CERTIFICATE_REGENERATION=bool(option("force_cert_regen", False)),
        PROXY_RULES=proxy_rules,
    )
