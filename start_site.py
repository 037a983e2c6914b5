#!/usr/bin/env python3
# start_site.py
# Serves a local folder as a website (static site or single-page application).
#
# Usage:
#   start-site [folder] [-p PORT] [-a ADDRESS] [--history] [--https] [--proxy rules.json] ...
#
# the connection URL is shown when the script runs successfully.
import argparse
import logging
import os
import sys
from typing import List, Optional

from site_certs import obtain_certificate
from site_config import (
    DEFAULT_CACHE_MAX_AGE,
    DEFAULT_FILE,
    DEFAULT_MICRO_CACHE_SECONDS,
    VERSION,
    SiteConfigError,
    resolve_config,
)
from site_pipeline import build_pipeline
from site_server import start


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="start-site", description="Serve a local folder as a website.")
    parser.add_argument("folder", nargs="?", default=".", help="Folder to serve (default: current directory).")
    parser.add_argument("-p", "--port", type=int, default=None, help="Port to listen on (default: $PORT or 4000).")
    parser.add_argument("-a", "--address", default=None, help="Address to bind (default: $HOST or 0.0.0.0).")
    parser.add_argument("--no-gzip", dest="gzip", action="store_false", help="Disable gzip compression.")
    parser.add_argument("-s", "--silent", action="store_true", help="Do not log requests or 404s.")
    parser.add_argument("-c", "--cache", type=int, default=None,
                        help=f"Cache-Control max-age in seconds for static assets (default: {DEFAULT_CACHE_MAX_AGE}).")
    parser.add_argument("-m", "--micro-cache", dest="micro_cache", type=float, default=None,
                        help=f"Micro-cache lifetime in seconds for 404 responses, 0 disables (default: {DEFAULT_MICRO_CACHE_SECONDS}).")
    parser.add_argument("--history", action="store_true", help="Serve the index file for unknown navigation paths (SPA routing).")
    parser.add_argument("-i", "--index", default=None, help=f"Entry document relative to the folder (default: {DEFAULT_FILE}).")
    parser.add_argument("-S", "--https", dest="secure", action="store_true", help="Serve over HTTPS.")
    parser.add_argument("-C", "--cert", default=None, help="TLS certificate file (with --key; default: generated).")
    parser.add_argument("-K", "--key", default=None, help="TLS private key file (with --cert; default: generated).")
    parser.add_argument("--force-cert-regen", action="store_true", help="Force regeneration of the generated certificate.")
    parser.add_argument("-P", "--proxy", default=None, help="JSON file of proxy rules: [{\"path\": ..., \"rule\": ...}].")
    parser.add_argument("--cors", action="store_true", help="Add permissive CORS headers to all responses.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # Configure logging
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    try:
        config = resolve_config(vars(args), os.environ)
        bundle = obtain_certificate(config) if config.SECURE_SITE else None
    except SiteConfigError as e:
        logging.error(f"FATAL ERROR: {e}")
        return 1

    try:
        start(config, build_pipeline(config), bundle)
    except KeyboardInterrupt:
        logging.info("Server manually stopped via Ctrl+C. Exiting gracefully.")
    finally:
        logging.info("Application finished.")
    return 0


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
