#!/usr/bin/env python3
"""
asset_proxy.py
==============

Asset-delivery proxy that serves mesh assets in the canonical version 2.00
layout.

    GET /asset?id=<asset id>

The asset descriptor is fetched from ``{api_base}/v2/assetId/{id}``. Mesh
assets (``assetTypeId == 4``) are downloaded from the first listed location
and transcoded with ``mesh_transcoder.try_transcode``. A successful transcode
is served as ``application/octet-stream``; every other outcome redirects to
the original asset at ``{api_base}/v1/asset?id={id}``.

Usage:
    python3 asset_proxy.py --host 127.0.0.1 --port 8080 --verbose
"""

from __future__ import annotations

import argparse
import logging
import os
import random
import sys
import time
from dataclasses import dataclass, field
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlsplit

import httpx

import mesh_transcoder
from mesh_transcoder import Transcoded, V4_LAYOUT_FIXED, V4_LAYOUTS

DEFAULT_API_BASE = "https://assetdelivery.roblox.com"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8080
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 2

MESH_ASSET_TYPE_ID = 4
ASSET_USER_AGENT = "Roblox/WinInet"
TRANSIENT_STATUSES = {429, 500, 502, 503, 504}
MAX_ASSET_ID = 2**64 - 1


class AssetFetchError(RuntimeError):
    pass


@dataclass
class ProxyConfig:
    api_base: str = DEFAULT_API_BASE
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    v4_layout: str = V4_LAYOUT_FIXED


@dataclass
class AssetResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    outcome: str = ""


# ---------------------------------------------------------------------------
# Upstream
# ---------------------------------------------------------------------------


def fallback_location(api_base: str, asset_id: int) -> str:
    return f"{api_base.rstrip('/')}/v1/asset?id={asset_id}"


def descriptor_url(api_base: str, asset_id: int) -> str:
    return f"{api_base.rstrip('/')}/v2/assetId/{asset_id}"


def _get_with_retries(
    client: httpx.Client,
    url: str,
    config: ProxyConfig,
    headers: Optional[Dict[str, str]] = None,
) -> httpx.Response:
    timeout = httpx.Timeout(config.timeout_seconds)

    for attempt in range(config.max_retries + 1):
        try:
            response = client.get(url, headers=headers, timeout=timeout)
            if response.status_code in TRANSIENT_STATUSES and attempt < config.max_retries:
                backoff = (2**attempt) * 0.25 + random.uniform(0.0, 0.25)
                logging.warning(
                    "Upstream transient error %s for %s, retrying in %.2fs (attempt %d/%d)",
                    response.status_code, url, backoff, attempt + 1, config.max_retries,
                )
                time.sleep(backoff)
                continue
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            raise AssetFetchError(
                f"Upstream returned HTTP {exc.response.status_code} for {url}"
            ) from exc
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            if attempt < config.max_retries:
                backoff = (2**attempt) * 0.25 + random.uniform(0.0, 0.25)
                logging.warning(
                    "Upstream network/timeout error (%s), retrying in %.2fs (attempt %d/%d)",
                    exc, backoff, attempt + 1, config.max_retries,
                )
                time.sleep(backoff)
                continue
            raise AssetFetchError(f"Upstream unreachable for {url}: {exc}") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise AssetFetchError(f"Upstream request failed for {url}: {exc}") from exc

    raise AssetFetchError("Unexpected retry loop exit")


def fetch_asset_descriptor(client: httpx.Client, asset_id: int, config: ProxyConfig) -> Dict[str, Any]:
    response = _get_with_retries(client, descriptor_url(config.api_base, asset_id), config)
    try:
        payload = response.json()
    except ValueError as exc:
        raise AssetFetchError(f"Asset descriptor for {asset_id} is not JSON") from exc
    if not isinstance(payload, dict):
        raise AssetFetchError(f"Asset descriptor for {asset_id} is not an object")
    return payload


def first_location(descriptor: Dict[str, Any]) -> str:
    locations = descriptor.get("locations")
    if not isinstance(locations, list) or not locations:
        raise AssetFetchError("Asset descriptor has no locations")
    location = locations[0].get("location") if isinstance(locations[0], dict) else None
    if not isinstance(location, str) or not location:
        raise AssetFetchError("Asset descriptor location is missing")
    parts = urlsplit(location)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise AssetFetchError(f"Asset descriptor location is not an absolute URL: {location!r}")
    return location


def fetch_asset_bytes(client: httpx.Client, location: str, config: ProxyConfig) -> bytes:
    response = _get_with_retries(
        client, location, config, headers={"User-Agent": ASSET_USER_AGENT}
    )
    return response.content


# ---------------------------------------------------------------------------
# Request handling
# ---------------------------------------------------------------------------


def redirect_response(api_base: str, asset_id: int, outcome: str) -> AssetResponse:
    return AssetResponse(
        status=HTTPStatus.FOUND,
        headers={"Location": fallback_location(api_base, asset_id)},
        outcome=outcome,
    )


def parse_asset_id(raw_query: str) -> Optional[int]:
    values = parse_qs(raw_query).get("id")
    if not values:
        return None
    raw_id = values[0]
    if not (raw_id.isascii() and raw_id.isdigit()):
        return None
    asset_id = int(raw_id)
    if asset_id > MAX_ASSET_ID:
        return None
    return asset_id


def handle_asset_request(client: httpx.Client, asset_id: int, config: ProxyConfig) -> AssetResponse:
    """Resolve one asset request into a served body or a redirect."""
    try:
        descriptor = fetch_asset_descriptor(client, asset_id, config)
    except AssetFetchError as exc:
        logging.warning("Descriptor fetch failed for %d: %s", asset_id, exc)
        return redirect_response(config.api_base, asset_id, "descriptor_error")

    asset_type_id = descriptor.get("assetTypeId")
    logging.debug("Asset %d assetTypeId=%r", asset_id, asset_type_id)
    if asset_type_id is None:
        return redirect_response(config.api_base, asset_id, "no_asset_type")
    if asset_type_id != MESH_ASSET_TYPE_ID:
        return redirect_response(config.api_base, asset_id, "not_mesh")

    try:
        raw = fetch_asset_bytes(client, first_location(descriptor), config)
    except AssetFetchError as exc:
        logging.warning("Mesh download failed for %d: %s", asset_id, exc)
        return redirect_response(config.api_base, asset_id, "download_error")

    start_time = time.perf_counter()
    result = mesh_transcoder.try_transcode(raw, v4_layout=config.v4_layout)
    logging.debug("Elapsed: %.2fms", (time.perf_counter() - start_time) * 1000.0)

    if isinstance(result, Transcoded):
        logging.info(
            "Asset %d transcoded v%s -> v2.00 (%d bytes)",
            asset_id, result.source_version, len(result.data),
        )
        return AssetResponse(
            status=HTTPStatus.OK,
            headers={"Content-Type": "application/octet-stream"},
            body=result.data,
            outcome=result.kind,
        )

    if isinstance(result, mesh_transcoder.TranscodeFailure):
        logging.warning("Asset %d not transcoded (%s): %s", asset_id, result.reason, result.detail)
        return redirect_response(config.api_base, asset_id, result.reason)

    logging.info("Asset %d served from origin (%s)", asset_id, result.kind)
    return redirect_response(config.api_base, asset_id, result.kind)


def route_request(client: httpx.Client, path: str, config: ProxyConfig) -> AssetResponse:
    parts = urlsplit(path)
    route = parts.path.rstrip("/") or "/"
    if route != "/asset":
        return AssetResponse(status=HTTPStatus.NOT_FOUND, body=b"not found", outcome="not_found")
    asset_id = parse_asset_id(parts.query)
    if asset_id is None:
        return AssetResponse(
            status=HTTPStatus.BAD_REQUEST, body=b"missing or invalid id", outcome="bad_request"
        )
    return handle_asset_request(client, asset_id, config)


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


class AssetRequestHandler(BaseHTTPRequestHandler):
    config: ProxyConfig = ProxyConfig()

    def do_GET(self) -> None:  # noqa: N802
        with httpx.Client(follow_redirects=True) as client:
            response = route_request(client, self.path, self.config)

        self.send_response(response.status)
        for name, value in response.headers.items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(response.body)))
        self.end_headers()
        self.wfile.write(response.body)

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logging.info("%s - %s", self.address_string(), format % args)


def build_server(host: str, port: int, config: ProxyConfig) -> ThreadingHTTPServer:
    handler = type("ConfiguredAssetRequestHandler", (AssetRequestHandler,), {"config": config})
    return ThreadingHTTPServer((host, port), handler)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Serve mesh assets transcoded to the canonical version 2.00 layout."
    )
    parser.add_argument(
        "--host", default=os.getenv("MESH_PROXY_HOST", DEFAULT_HOST),
        help=f"Bind address (default: $MESH_PROXY_HOST or {DEFAULT_HOST})",
    )
    parser.add_argument(
        "--port", type=int, default=int(os.getenv("MESH_PROXY_PORT", DEFAULT_PORT)),
        help=f"Bind port (default: $MESH_PROXY_PORT or {DEFAULT_PORT})",
    )
    parser.add_argument(
        "--api-base", default=os.getenv("MESH_PROXY_API_BASE", DEFAULT_API_BASE),
        help="Asset delivery API base URL (default: $MESH_PROXY_API_BASE)",
    )
    parser.add_argument(
        "--timeout-seconds", type=float,
        default=float(os.getenv("MESH_PROXY_TIMEOUT", DEFAULT_TIMEOUT_SECONDS)),
        help="Per-request upstream timeout (default: $MESH_PROXY_TIMEOUT or 30)",
    )
    parser.add_argument(
        "--max-retries", type=int, default=DEFAULT_MAX_RETRIES,
        help="Retries for transient upstream errors",
    )
    parser.add_argument(
        "--v4-layout", choices=V4_LAYOUTS, default=V4_LAYOUT_FIXED,
        help="Header layout used for version 4.xx meshes",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.max_retries < 0:
        parser.error("--max-retries must be >= 0")
    if args.timeout_seconds <= 0:
        parser.error("--timeout-seconds must be > 0")

    configure_logging(args.verbose)

    config = ProxyConfig(
        api_base=args.api_base,
        timeout_seconds=args.timeout_seconds,
        max_retries=args.max_retries,
        v4_layout=args.v4_layout,
    )
    server = build_server(args.host, args.port, config)
    logging.info("Asset delivery proxy listening on %s:%d (api=%s)", args.host, args.port, config.api_base)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logging.info("Shutting down")
    finally:
        server.server_close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
