"""
Tests for the TLS-terminating reverse proxy, run against a local aiohttp upstream.
"""

import asyncio
import socket
import ssl

import httpx
import pytest
from aiohttp import web
from cryptography.hazmat.primitives import serialization

from attested_proxy.client import build_trust_store
from attested_proxy.proxy import (
    TLSTerminatingReverseProxy,
    _hop_by_hop,
    make_server_ssl_context,
    upstream_url_for,
)
from attested_proxy.server import ManagedServer


def make_upstream_app() -> web.Application:
    async def echo(request: web.Request) -> web.Response:
        body = await request.read()
        return web.json_response({
            "method": request.method,
            "path_qs": request.path_qs,
            "headers": {k.lower(): v for k, v in request.headers.items()},
            "body": body.decode(),
        })

    async def health(request: web.Request) -> web.Response:
        return web.Response(text="upstream healthy\n", headers={"X-Upstream": "1", "Keep-Alive": "timeout=5"})

    async def fail(request: web.Request) -> web.Response:
        return web.Response(status=500, text="upstream exploded")

    app = web.Application()
    app.router.add_get("/health", health)
    app.router.add_get("/fail", fail)
    app.router.add_route("*", "/echo{tail:.*}", echo)
    return app


def _free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class _Stack:
    """Upstream plus proxy, both on ephemeral ports."""

    def __init__(self, tls_material, upstream_url=None):
        self.tls_material = tls_material
        self.upstream = ManagedServer("upstream", make_upstream_app(), "127.0.0.1", 0)
        self.upstream_url = upstream_url
        self.proxy = None

    async def __aenter__(self):
        await self.upstream.start()
        upstream_url = self.upstream_url or f"http://127.0.0.1:{self.upstream.bound_port}"
        self.proxy = TLSTerminatingReverseProxy(
            upstream_url,
            "127.0.0.1",
            0,
            make_server_ssl_context(str(self.tls_material.cert_file), str(self.tls_material.key_file)),
            grace_period=1.0,
        )
        await self.proxy.start()
        return self

    async def __aexit__(self, *exc):
        if self.proxy is not None:
            await self.proxy.stop()
        await self.upstream.stop()

    @property
    def base_url(self) -> str:
        return f"https://127.0.0.1:{self.proxy.bound_port}"

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(verify=build_trust_store(self.tls_material.ca_pem), timeout=10)


class TestUpstreamUrl:
    @pytest.mark.parametrize("upstream,raw_path,expected", [
        ("http://up:8082", "/health", "http://up:8082/health"),
        ("http://up:8082/", "/health", "http://up:8082/health"),
        ("http://up:8082/base", "/a/b?x=1", "http://up:8082/base/a/b?x=1"),
        ("http://up:8082/base/", "/a", "http://up:8082/base/a"),
        ("http://up:8082/base?k=v", "/a?x=1", "http://up:8082/base/a?k=v&x=1"),
        ("http://up:8082", "/a%2Fb?q=%20", "http://up:8082/a%2Fb?q=%20"),
    ])
    def test_join(self, upstream, raw_path, expected):
        assert str(upstream_url_for(httpx.URL(upstream), raw_path)) == expected


class TestHopByHop:
    def test_standard_headers(self):
        names = _hop_by_hop([])
        assert {"connection", "keep-alive", "transfer-encoding", "upgrade"} <= names

    def test_connection_tokens(self):
        names = _hop_by_hop(["close, X-Private", " x-other "])
        assert {"close", "x-private", "x-other"} <= names


class TestProxyForwarding:
    @pytest.mark.asyncio
    async def test_forwards_request(self, tls_material):
        async with _Stack(tls_material) as stack:
            proxy_port = stack.proxy.bound_port
            async with stack.client() as http:
                response = await http.post(
                    f"{stack.base_url}/echo/items?id=7&id=8",
                    content=b'{"hello": "world"}',
                    headers={"X-Custom": "yes", "Connection": "X-Private", "X-Private": "secret"},
                )

        assert response.status_code == 200
        echoed = response.json()
        assert echoed["method"] == "POST"
        assert echoed["path_qs"] == "/echo/items?id=7&id=8"
        assert echoed["body"] == '{"hello": "world"}'
        assert echoed["headers"]["x-custom"] == "yes"
        assert echoed["headers"]["host"] == f"127.0.0.1:{proxy_port}"
        assert echoed["headers"]["x-forwarded-for"] == "127.0.0.1"
        assert "x-private" not in echoed["headers"]

    @pytest.mark.asyncio
    async def test_appends_forwarded_for(self, tls_material):
        async with _Stack(tls_material) as stack:
            async with stack.client() as http:
                response = await http.get(f"{stack.base_url}/echo", headers={"X-Forwarded-For": "10.0.0.1"})

        assert response.json()["headers"]["x-forwarded-for"] == "10.0.0.1, 127.0.0.1"

    @pytest.mark.asyncio
    async def test_returns_upstream_body_unchanged(self, tls_material):
        async with _Stack(tls_material) as stack:
            async with stack.client() as http:
                response = await http.get(f"{stack.base_url}/health")

        assert response.status_code == 200
        assert response.content == b"upstream healthy\n"
        assert response.headers["x-upstream"] == "1"
        assert "keep-alive" not in response.headers

    @pytest.mark.asyncio
    async def test_upstream_error_status_is_isolated(self, tls_material):
        async with _Stack(tls_material) as stack:
            async with stack.client() as http:
                responses = await asyncio.gather(
                    http.get(f"{stack.base_url}/fail"),
                    *(http.get(f"{stack.base_url}/echo/{i}") for i in range(10)),
                )

        failed, *siblings = responses
        assert failed.status_code == 500
        assert failed.text == "upstream exploded"
        assert [r.status_code for r in siblings] == [200] * 10
        assert [r.json()["path_qs"] for r in siblings] == [f"/echo/{i}" for i in range(10)]

    @pytest.mark.asyncio
    async def test_unreachable_upstream_is_bad_gateway(self, tls_material):
        async with _Stack(tls_material, upstream_url=f"http://127.0.0.1:{_free_port()}") as stack:
            async with stack.client() as http:
                first = await http.get(f"{stack.base_url}/health")
                second = await http.get(f"{stack.base_url}/health")

        assert first.status_code == 502
        assert second.status_code == 502

    @pytest.mark.asyncio
    async def test_requires_tls13(self, tls_material):
        async with _Stack(tls_material) as stack:
            ctx = build_trust_store(tls_material.ca_pem)
            ctx.minimum_version = ctx.maximum_version = ssl.TLSVersion.TLSv1_2
            async with httpx.AsyncClient(verify=ctx) as http:
                with pytest.raises(httpx.ConnectError):
                    await http.get(f"{stack.base_url}/health")

    @pytest.mark.asyncio
    async def test_rejects_untrusted_client_roots(self, tls_material, pck_hierarchy):
        other_root = pck_hierarchy.root_cert.public_bytes(serialization.Encoding.PEM)
        async with _Stack(tls_material) as stack:
            async with httpx.AsyncClient(verify=build_trust_store(other_root)) as http:
                with pytest.raises(httpx.ConnectError):
                    await http.get(f"{stack.base_url}/health")
