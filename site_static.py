#!/usr/bin/env python3
# site_static.py
# -*- coding: utf-8 -*-
"""
Maps URL paths onto files under the site folder and builds the streamed file
responses, including the Cache-Control policy (max-age for assets, no-cache for
the entry document).
"""
import mimetypes
import os
from typing import Optional, Tuple

from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse

# Forced onto GET responses for the entry document so SPA shell updates are never stale.
NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "Surrogate-Control": "no-store",
}

# Pre-compressed assets are served as-is with the matching Content-Encoding.
PRECOMPRESSED_SUFFIXES = {".gz": "gzip", ".br": "br"}


def secure_filepath(root: str, filepath: str) -> Optional[str]:
    """Returns the normalized filepath if it lies within root, else None."""
    normalized_root = os.path.abspath(os.path.normpath(root))
    normalized_filepath = os.path.abspath(os.path.normpath(filepath))
    try:
        if os.path.commonpath([normalized_root, normalized_filepath]) != normalized_root:
            return None
    except ValueError:
        # Different drives on Windows
        return None
    return normalized_filepath


def content_type_for(path: str) -> Tuple[str, Optional[str]]:
    """(media type, content encoding) for a file path."""
    base_path, suffix = os.path.splitext(path)
    encoding = PRECOMPRESSED_SUFFIXES.get(suffix.lower())
    if encoding:
        path = base_path
    if path.endswith(".js"):
        mime_type = "application/javascript"
    elif path.endswith(".css"):
        mime_type = "text/css"
    else:
        mime_type, _ = mimetypes.guess_type(path)
    return mime_type or "application/octet-stream", encoding


class StaticResolver:
    """
    Resolves request paths to files below `root`.

    Paths arrive already percent-decoded (Starlette's `request.url.path`) and
    are used as-is.

    Args:
        root: served folder.
        max_age: Cache-Control max-age applied to resolved assets when apply_cache is set.
        entry_file: absolute path of the entry document; GET responses for it get
            NO_CACHE_HEADERS instead of max-age.
        directory_index: file served for directory paths, or None to leave
            directories unresolved (history fallback owns the entry document).
        apply_cache: whether this mount sets Cache-Control at all.
    """

    def __init__(self, root: str, max_age: int, entry_file: Optional[str] = None,
                 directory_index: Optional[str] = "index.html", apply_cache: bool = True):
        self.root = os.path.abspath(root)
        self.max_age = max_age
        self.entry_file = os.path.normpath(entry_file) if entry_file else None
        self.directory_index = directory_index
        self.apply_cache = apply_cache

    def _full_path(self, url_path: str) -> Optional[str]:
        relative = url_path.lstrip("/")
        if "\x00" in relative:
            return None
        return secure_filepath(self.root, os.path.join(self.root, relative))

    def locate(self, url_path: str) -> Optional[str]:
        """Filesystem path for url_path, or None on a miss."""
        full_path = self._full_path(url_path)
        if full_path is None:
            return None
        if os.path.isdir(full_path):
            if not self.directory_index:
                return None
            full_path = secure_filepath(self.root, os.path.join(full_path, self.directory_index))
            if full_path is None:
                return None
        return full_path if os.path.isfile(full_path) else None

    def is_file(self, url_path: str) -> bool:
        """True if url_path names an existing regular file (directories never count)."""
        full_path = self._full_path(url_path)
        return full_path is not None and os.path.isfile(full_path)

    def cache_headers(self, method: str, full_path: str) -> dict:
        if method == "GET" and self.entry_file and full_path == self.entry_file:
            return dict(NO_CACHE_HEADERS)
        if self.apply_cache:
            return {"Cache-Control": f"max-age={self.max_age}"}
        return {}

    async def resolve(self, method: str, url_path: str) -> Optional[FileResponse]:
        """A streamed file response for url_path, or None when nothing should be served."""
        if method not in ("GET", "HEAD"):
            return None
        full_path = await run_in_threadpool(self.locate, url_path)
        if full_path is None:
            return None
        try:
            stat_result = await run_in_threadpool(os.stat, full_path)
        except OSError:
            return None

        media_type, encoding = content_type_for(full_path)
        headers = self.cache_headers(method, full_path)
        if encoding:
            headers["Content-Encoding"] = encoding
        # stat_result makes FileResponse set Content-Length, Last-Modified and ETag up front
        return FileResponse(full_path, headers=headers, media_type=media_type, stat_result=stat_result)
