#!/usr/bin/env python3
# site_proxy.py
# -*- coding: utf-8 -*-
"""
Proxy rules: path prefixes forwarded to an upstream server.

The rules file is a JSON list of {"path": "/api", "rule": {...}} entries. The
rule is passed through as written; forwarding honours its "target",
"pathRewrite", "headers" and "changeOrigin" keys. A bare string rule is taken
as the target.
"""
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit

import httpx
from fastapi import Request, Response

from site_config import SiteConfigError

# Connection-scoped headers that must not be forwarded in either direction.
HOP_BY_HOP_HEADERS = frozenset({
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailer", "trailers", "transfer-encoding", "upgrade",
})

PROXY_TIMEOUT = httpx.Timeout(30.0, connect=10.0)


@dataclass(frozen=True)
class ProxyRule:
    # URL path prefix that routes to this rule, e.g. "/api"
    path: str
    # Forwarding options as written in the rules file
    rule: Any

    def matches(self, path: str) -> bool:
        return path.startswith(self.path)

    @property
    def options(self) -> Dict[str, Any]:
        if isinstance(self.rule, str):
            return {"target": self.rule}
        return self.rule


def _check_path_rewrite(rule: ProxyRule, rules_file: Path):
    path_rewrite = rule.options.get("pathRewrite")
    if path_rewrite is None:
        return
    if not isinstance(path_rewrite, dict):
        raise SiteConfigError(f"pathRewrite for {rule.path!r} in {rules_file} must be an object")
    for pattern in path_rewrite:
        try:
            re.compile(pattern)
        except re.error as e:
            raise SiteConfigError(f"pathRewrite pattern {pattern!r} for {rule.path!r} in {rules_file} is invalid: {e}")


def load_proxy_rules(rules_file: str) -> Tuple[ProxyRule, ...]:
    """
    Reads the ordered proxy rules from a JSON file.

    Proxying is opt-in, so a missing or malformed file is a configuration
    error rather than something to recover from.
    """
    path = Path(rules_file).expanduser()
    if not path.is_file():
        raise SiteConfigError(f"Proxy rules file not found: {path}")
    try:
        entries = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise SiteConfigError(f"Proxy rules file {path} could not be read: {e}")

    if not isinstance(entries, list):
        raise SiteConfigError(f"Proxy rules file {path} must contain a JSON list")

    rules = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict) or "path" not in entry or "rule" not in entry:
            raise SiteConfigError(f"Proxy rule #{index} in {path} needs both 'path' and 'rule'")
        if not isinstance(entry["rule"], (str, dict)):
            raise SiteConfigError(f"Proxy rule #{index} in {path} must be a target URL or an object")
        rule = ProxyRule(path=str(entry["path"]), rule=entry["rule"])
        if not rule.options.get("target"):
            raise SiteConfigError(f"Proxy rule for {rule.path!r} in {path} has no target")
        _check_path_rewrite(rule, path)
        rules.append(rule)
        logging.info(f"Proxy: {rule.path} -> {rule.options['target']}")
    return tuple(rules)


def rewrite_path(path: str, path_rewrite: Optional[Dict[str, str]]) -> str:
    """Applies {regex: replacement} rewrites in order."""
    for pattern, replacement in (path_rewrite or {}).items():
        path = re.sub(pattern, replacement, path)
    return path


def upstream_url(rule: ProxyRule, path: str, query: str) -> str:
    options = rule.options
    url = options["target"].rstrip("/") + rewrite_path(path, options.get("pathRewrite"))
    if query:
        url += "?" + query
    return url


def forwarded_headers(rule: ProxyRule, request: Request) -> Dict[str, str]:
    options = rule.options
    headers = {
        key: value for key, value in request.headers.items()
        if key not in HOP_BY_HOP_HEADERS and key != "content-length"
    }
    if options.get("changeOrigin"):
        headers["host"] = urlsplit(options["target"]).netloc
    for key, value in (options.get("headers") or {}).items():
        headers[key.lower()] = str(value)
    return headers


def _proxy_error(status_code: int, url: str) -> Response:
    target = urlsplit(url)
    return Response(
        content=f"Error occurred while trying to proxy: {target.netloc}{target.path}",
        status_code=status_code,
        media_type="text/plain",
    )


async def forward_request(rule: ProxyRule, request: Request, path: str,
                          transport: Optional[httpx.AsyncBaseTransport] = None) -> Response:
    """
    Forwards the request to the rule's target and returns the upstream response
    unmodified (apart from hop-by-hop headers). Upstream failures become
    504 (unreachable / timed out) or 502 responses.
    """
    url = upstream_url(rule, path, request.url.query)
    body = await request.body()
    async with httpx.AsyncClient(transport=transport, timeout=PROXY_TIMEOUT, follow_redirects=False) as client:
        try:
            upstream = await client.request(
                request.method, url,
                headers=forwarded_headers(rule, request),
                content=body or None,
            )
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            logging.error(f"Proxy: {request.method} {url} unreachable: {e}")
            return _proxy_error(504, url)
        except httpx.HTTPError as e:
            logging.error(f"Proxy: {request.method} {url} failed: {e}")
            return _proxy_error(502, url)

    response = Response(content=upstream.content, status_code=upstream.status_code)
    # httpx has already decoded the body, so its encoding and length no longer apply.
    skipped = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}
    for key, value in upstream.headers.multi_items():
        if key.lower() not in skipped:
            response.headers.append(key, value)
    return response
