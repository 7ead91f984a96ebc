#!/usr/bin/env python3
import struct
import unittest
from pathlib import Path
from unittest import mock
import sys
import threading

import httpx


SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

import asset_proxy as proxy
import mesh_transcoder as transcoder


API_BASE = "https://assets.example.test"
CDN_LOCATION = "https://cdn.example.test/mesh/abc"


def _v3_mesh() -> bytes:
    vertex = transcoder.Vertex(
        position=(1.0, 2.0, 3.0), normal=(0.0, 1.0, 0.0),
        uv=(0.5, 0.5), tangent=(0, 0, 127, 1),
    )
    header = struct.pack("<HBBHHII", 16, transcoder.SIZEOF_VERTEX, 12, 2, 0, 3, 1)
    return (
        b"version 3.00\n" + header
        + vertex.to_bytes() * 3
        + struct.pack("<3I", 0, 1, 2)
    )


def _client(descriptor, asset_bytes: bytes = b"", seen=None, cdn_status: int = 200) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if request.url.path.startswith("/v2/assetId/"):
            if isinstance(descriptor, int):
                return httpx.Response(descriptor)
            return httpx.Response(200, json=descriptor)
        if str(request.url) == CDN_LOCATION:
            return httpx.Response(cdn_status, content=asset_bytes)
        return httpx.Response(404)

    return httpx.Client(transport=httpx.MockTransport(handler))


def _mesh_descriptor() -> dict:
    return {"assetTypeId": 4, "locations": [{"location": CDN_LOCATION}]}


class AssetRequestTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = proxy.ProxyConfig(api_base=API_BASE, max_retries=0)

    def assertRedirected(self, response: proxy.AssetResponse, outcome: str) -> None:
        self.assertEqual(response.status, 302)
        self.assertEqual(response.headers["Location"], f"{API_BASE}/v1/asset?id=42")
        self.assertEqual(response.outcome, outcome)

    def test_transcoded_mesh_is_served_as_octet_stream(self) -> None:
        seen = []
        with _client(_mesh_descriptor(), _v3_mesh(), seen) as client:
            response = proxy.handle_asset_request(client, 42, self.config)

        self.assertEqual(response.status, 200)
        self.assertEqual(response.headers["Content-Type"], "application/octet-stream")
        self.assertTrue(response.body.startswith(b"version 2.00\n"))
        header, vertices, faces = transcoder.parse_v2(response.body)
        self.assertEqual((header.vertex_count, header.face_count), (3, 1))
        self.assertEqual(seen[0].url.path, "/v2/assetId/42")
        self.assertEqual(seen[1].headers["User-Agent"], proxy.ASSET_USER_AGENT)

    def test_missing_asset_type_redirects(self) -> None:
        with _client({"errors": []}) as client:
            response = proxy.handle_asset_request(client, 42, self.config)
        self.assertRedirected(response, "no_asset_type")

    def test_non_mesh_asset_redirects_without_download(self) -> None:
        seen = []
        with _client({"assetTypeId": 1, "locations": []}, seen=seen) as client:
            response = proxy.handle_asset_request(client, 42, self.config)
        self.assertRedirected(response, "not_mesh")
        self.assertEqual(len(seen), 1)

    def test_canonical_mesh_redirects(self) -> None:
        canonical = transcoder.construct_v2([], [])
        with _client(_mesh_descriptor(), canonical) as client:
            response = proxy.handle_asset_request(client, 42, self.config)
        self.assertRedirected(response, transcoder.ROUTE_PASS_THROUGH)

    def test_unsupported_mesh_redirects(self) -> None:
        with _client(_mesh_descriptor(), b"version 7.00\n") as client:
            response = proxy.handle_asset_request(client, 42, self.config)
        self.assertRedirected(response, transcoder.ROUTE_UNSUPPORTED)

    def test_truncated_mesh_redirects(self) -> None:
        with _client(_mesh_descriptor(), _v3_mesh()[:60]) as client:
            response = proxy.handle_asset_request(client, 42, self.config)
        self.assertRedirected(response, transcoder.FAILURE_TRUNCATED)

    def test_descriptor_http_error_redirects(self) -> None:
        with _client(404) as client:
            response = proxy.handle_asset_request(client, 42, self.config)
        self.assertRedirected(response, "descriptor_error")

    def test_descriptor_without_locations_redirects(self) -> None:
        with _client({"assetTypeId": 4}) as client:
            response = proxy.handle_asset_request(client, 42, self.config)
        self.assertRedirected(response, "download_error")

    def test_download_error_redirects(self) -> None:
        with _client(_mesh_descriptor(), cdn_status=403) as client:
            response = proxy.handle_asset_request(client, 42, self.config)
        self.assertRedirected(response, "download_error")

    def test_cdn_protocol_error_redirects(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.startswith("/v2/assetId/"):
                return httpx.Response(200, json=_mesh_descriptor())
            raise httpx.RemoteProtocolError("Server disconnected", request=request)

        with mock.patch.object(proxy.time, "sleep") as sleep, \
                httpx.Client(transport=httpx.MockTransport(handler)) as client:
            response = proxy.handle_asset_request(client, 42, self.config)
        self.assertRedirected(response, "download_error")
        sleep.assert_not_called()

    def test_relative_location_redirects(self) -> None:
        seen = []
        descriptor = {"assetTypeId": 4, "locations": [{"location": "cdn/relative"}]}
        with _client(descriptor, seen=seen) as client:
            response = proxy.handle_asset_request(client, 42, self.config)
        self.assertRedirected(response, "download_error")
        self.assertEqual(len(seen), 1)

    def test_unsupported_protocol_becomes_fetch_error(self) -> None:
        with httpx.Client() as client:
            with self.assertRaises(proxy.AssetFetchError):
                proxy.fetch_asset_bytes(client, "cdn/relative", self.config)

    def test_transient_errors_are_retried(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503)
            return httpx.Response(200, json={"assetTypeId": 1})

        config = proxy.ProxyConfig(api_base=API_BASE, max_retries=2)
        with mock.patch.object(proxy.time, "sleep") as sleep, \
                httpx.Client(transport=httpx.MockTransport(handler)) as client:
            descriptor = proxy.fetch_asset_descriptor(client, 42, config)

        self.assertEqual(descriptor, {"assetTypeId": 1})
        self.assertEqual(len(calls), 2)
        sleep.assert_called_once()

    def test_network_errors_exhaust_retries(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        config = proxy.ProxyConfig(api_base=API_BASE, max_retries=1)
        with mock.patch.object(proxy.time, "sleep"), \
                httpx.Client(transport=httpx.MockTransport(handler)) as client:
            with self.assertRaises(proxy.AssetFetchError):
                proxy.fetch_asset_descriptor(client, 42, config)


class RoutingTests(unittest.TestCase):
    def test_parse_asset_id(self) -> None:
        self.assertEqual(proxy.parse_asset_id("id=123"), 123)
        self.assertEqual(proxy.parse_asset_id(f"id={2**64 - 1}"), 2**64 - 1)
        self.assertIsNone(proxy.parse_asset_id(""))
        self.assertIsNone(proxy.parse_asset_id("id=abc"))
        self.assertIsNone(proxy.parse_asset_id("id=-1"))
        self.assertIsNone(proxy.parse_asset_id(f"id={2**64}"))
        for raw in ("id=1_000", "id=+5", "id= 7", "id=\u0661"):
            with self.subTest(raw=raw):
                self.assertIsNone(proxy.parse_asset_id(raw))

    def test_route_request(self) -> None:
        config = proxy.ProxyConfig(api_base=API_BASE, max_retries=0)
        with _client({"assetTypeId": 2}) as client:
            self.assertEqual(proxy.route_request(client, "/other", config).status, 404)
            self.assertEqual(proxy.route_request(client, "/asset?id=x", config).status, 400)
            response = proxy.route_request(client, "/asset/?id=42", config)
        self.assertEqual(response.status, 302)
        self.assertEqual(response.headers["Location"], f"{API_BASE}/v1/asset?id=42")

    def test_fallback_location_strips_trailing_slash(self) -> None:
        self.assertEqual(
            proxy.fallback_location(API_BASE + "/", 7), f"{API_BASE}/v1/asset?id=7"
        )


class ServerTests(unittest.TestCase):
    def setUp(self) -> None:
        config = proxy.ProxyConfig(api_base=API_BASE, max_retries=0)
        self.server = proxy.build_server("127.0.0.1", 0, config)
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        host, port = self.server.server_address[:2]
        self.client = httpx.Client(base_url=f"http://{host}:{port}", timeout=5, trust_env=False)

    def tearDown(self) -> None:
        self.client.close()
        self.server.shutdown()
        self.server.server_close()
        self.thread.join(timeout=5)

    def test_build_server_carries_config(self) -> None:
        self.assertEqual(self.server.RequestHandlerClass.config.api_base, API_BASE)

    def test_unknown_path_is_404(self) -> None:
        response = self.client.get("/other")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.content, b"not found")

    def test_invalid_id_is_400(self) -> None:
        for query in ("", "?id=abc", "?id=1_000"):
            with self.subTest(query=query):
                response = self.client.get(f"/asset{query}")
                self.assertEqual(response.status_code, 400)
                self.assertEqual(
                    response.headers["Content-Length"], str(len(b"missing or invalid id"))
                )


if __name__ == "__main__":
    unittest.main()
