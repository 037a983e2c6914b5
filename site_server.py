#!/usr/bin/env python3
# site_server.py
# -*- coding: utf-8 -*-
"""
Binds the listener for a served site: plain HTTP, or HTTPS with the certificate
bundle from site_certs. Either way the same pipeline handles every request.
"""
import asyncio
import logging
import socket
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, Request

from site_certs import CertificateBundle
from site_config import ServerConfig
from site_pipeline import Pipeline

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def create_app(pipeline: Pipeline) -> FastAPI:
    """A FastAPI app whose only route hands every request to the pipeline."""
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    async def dispatch(request: Request, full_path: str):
        return await pipeline.dispatch(request)

    app.add_api_route("/{full_path:path}", dispatch, methods=ALL_METHODS, include_in_schema=False)
    app.state.pipeline = pipeline
    return app


def get_lan_ip() -> str:
    """Gets the LAN IP address, falling back to loopback."""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            # No packets are sent for a UDP connect; it only selects the outbound interface.
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
        finally:
            s.close()
    except OSError as e:
        logging.warning(f"Error getting IP: {e}")
        return "127.0.0.1"


def startup_summary(config: ServerConfig) -> List[str]:
    url = f"{config.scheme}://localhost:{config.PORT}"
    lines = [
        f"Serving web files from '{config.SITE_FOLDER}' (ver {config.VERSION})",
        f"Connect to '{url}'",
    ]
    if config.HOSTNAME in ("0.0.0.0", "::"):
        lines.append(f" (or {config.scheme}://{get_lan_ip()}:{config.PORT})")
    else:
        lines.append(f" (bound to {config.HOSTNAME})")
    features = ", ".join(f"{name}={value}" for name, value in config.enabled_features().items())
    lines.append(f"Features: {features}")
    return lines


class SiteServer(uvicorn.Server):
    """uvicorn server that logs the startup summary once the listener is bound."""

    def __init__(self, config: uvicorn.Config, site_config: ServerConfig):
        super().__init__(config)
        self.site_config = site_config

    async def startup(self, sockets=None):
        await super().startup(sockets=sockets)
        if self.started:
            for line in startup_summary(self.site_config):
                logging.info(line)


def build_server(config: ServerConfig, pipeline: Pipeline, bundle: Optional[CertificateBundle] = None) -> SiteServer:
    """
    Configures (but does not start) the listener.

    TLS is used when the config asks for HTTPS; the bundle must then be given.
    """
    ssl_params = {}
    if config.SECURE_SITE:
        if bundle is None:
            raise ValueError("HTTPS requested without a certificate bundle")
        ssl_params = {"ssl_certfile": bundle.cert_path, "ssl_keyfile": bundle.key_path}

    uvicorn_config = uvicorn.Config(
        create_app(pipeline),
        host=config.HOSTNAME,
        port=config.PORT,
        lifespan="off",  # important: lifespan = off
        log_level="warning" if config.SILENT else "info",
        access_log=False,
        **ssl_params
    )
    return SiteServer(uvicorn_config, config)


def start(config: ServerConfig, pipeline: Pipeline, bundle: Optional[CertificateBundle] = None):
    """
    Runs the listener until interrupted. A bind failure (e.g. port in use) is
    reported by uvicorn, which exits the process; it is not retried.
    """
    server = build_server(config, pipeline, bundle)
    asyncio.run(server.serve())
