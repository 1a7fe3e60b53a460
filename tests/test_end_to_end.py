"""
End-to-end trust bootstrap: binder -> bootstrap endpoint -> client
verification -> TLS through the proxy -> upstream.
"""

import asyncio
import functools
from unittest.mock import patch

import pytest
from aiohttp import web

from attested_proxy.binder import CertificateAttestationBinder
from attested_proxy.bundle import CertBundle
from attested_proxy.cli import run_client
from attested_proxy.client import (
    Rejected,
    RejectionReason,
    Trusted,
    TrustBootstrapClient,
    TrustRejectedError,
    make_trusted_async_http_client,
    make_trusted_http_client,
)
from attested_proxy.config import ClientConfig
from attested_proxy.distribution import AttestedCertDistributionServer
from attested_proxy.lifecycle import LifecycleState, ServiceLifecycleCoordinator
from attested_proxy.proxy import TLSTerminatingReverseProxy, make_server_ssl_context
from attested_proxy.server import ManagedServer

from quote_builder import build_quote

pytestmark = pytest.mark.integration

UPSTREAM_BODY = b'{"status": "ok", "served_by": "upstream"}\n'


class RecordingIssuer:
    """Quote issuer backed by the test PCK hierarchy."""

    def __init__(self, hierarchy, zero_user_data=False):
        self.hierarchy = hierarchy
        self.zero_user_data = zero_user_data
        self.commitments = []

    def request_quote(self, commitment: bytes) -> bytes:
        self.commitments.append(commitment)
        user_data = b'\x00' * 64 if self.zero_user_data else commitment
        return build_quote(user_data, self.hierarchy)


class Deployment:
    """Upstream, bootstrap endpoint and proxy under one coordinator."""

    def __init__(self, bundle, tls_material):
        self.upstream_hits = 0

        async def health(request: web.Request) -> web.Response:
            self.upstream_hits += 1
            return web.Response(body=UPSTREAM_BODY, content_type="application/json")

        upstream_app = web.Application()
        upstream_app.router.add_get("/health", health)
        self.upstream = ManagedServer("upstream", upstream_app, "127.0.0.1", 0)
        self.bundle = bundle
        self.tls_material = tls_material

    async def __aenter__(self):
        await self.upstream.start()
        self.cert_service = AttestedCertDistributionServer(self.bundle, "127.0.0.1", 0, grace_period=1)
        self.proxy = TLSTerminatingReverseProxy(
            f"http://127.0.0.1:{self.upstream.bound_port}",
            "127.0.0.1",
            0,
            make_server_ssl_context(str(self.tls_material.cert_file), str(self.tls_material.key_file)),
            grace_period=1,
        )
        self.coordinator = ServiceLifecycleCoordinator([self.cert_service, self.proxy])
        self.run = asyncio.create_task(self.coordinator.run())
        await asyncio.wait_for(self.coordinator.wait_for_state(LifecycleState.RUNNING), 5)
        return self

    async def __aexit__(self, *exc):
        self.coordinator.request_shutdown("test finished")
        self.result = await asyncio.wait_for(self.run, 5)
        await self.upstream.stop()

    @property
    def cert_service_url(self) -> str:
        return f"http://127.0.0.1:{self.cert_service.bound_port}/"

    @property
    def proxy_url(self) -> str:
        return f"https://127.0.0.1:{self.proxy.bound_port}/health"


def _bundle(tls_material, issuer) -> CertBundle:
    ca_pem = tls_material.ca_file.read_bytes()
    return CertBundle(cert=ca_pem, quote=CertificateAttestationBinder(issuer).bind(ca_pem))


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_attested_certificate_is_trusted(self, tls_material, pck_hierarchy, verification_options):
        issuer = RecordingIssuer(pck_hierarchy)
        bundle = _bundle(tls_material, issuer)
        client = TrustBootstrapClient(options=verification_options)

        async with Deployment(bundle, tls_material) as deployment:
            decision = await asyncio.to_thread(client.bootstrap, deployment.cert_service_url)

            assert isinstance(decision, Trusted)
            assert decision.certificate == tls_material.ca_pem
            assert len(decision.ssl_context.get_ca_certs()) == 1

            async with make_trusted_async_http_client(decision) as http:
                response = await http.get(deployment.proxy_url)

            def sync_get():
                with make_trusted_http_client(decision) as sync_http:
                    return sync_http.get(deployment.proxy_url)

            sync_response = await asyncio.to_thread(sync_get)

        assert len(issuer.commitments) == 1
        assert response.status_code == 200
        assert response.content == UPSTREAM_BODY
        assert sync_response.content == UPSTREAM_BODY
        assert deployment.upstream_hits == 2
        assert deployment.result.clean

    @pytest.mark.asyncio
    async def test_zeroed_user_data_is_rejected(self, tls_material, pck_hierarchy, verification_options):
        bundle = _bundle(tls_material, RecordingIssuer(pck_hierarchy, zero_user_data=True))
        client = TrustBootstrapClient(options=verification_options)

        async with Deployment(bundle, tls_material) as deployment:
            decision = await asyncio.to_thread(client.bootstrap, deployment.cert_service_url)

            assert isinstance(decision, Rejected)
            assert decision.reason == RejectionReason.BINDING_MISMATCH
            with pytest.raises(TrustRejectedError):
                make_trusted_http_client(decision)

        assert deployment.upstream_hits == 0

    @pytest.mark.asyncio
    async def test_client_command(self, tls_material, pck_hierarchy, verification_options):
        bundle = _bundle(tls_material, RecordingIssuer(pck_hierarchy))
        client_factory = functools.partial(TrustBootstrapClient, options=verification_options)

        async with Deployment(bundle, tls_material) as deployment:
            config = ClientConfig(
                cert_service=deployment.cert_service_url,
                proxy_url=deployment.proxy_url,
                fetch_timeout=5,
            )
            with patch('attested_proxy.cli.TrustBootstrapClient', client_factory):
                exit_code = await asyncio.to_thread(run_client, config)

        assert exit_code == 0
        assert deployment.upstream_hits == 1

    @pytest.mark.asyncio
    async def test_client_command_refuses_unbound_certificate(self, tls_material, pck_hierarchy, verification_options):
        bundle = _bundle(tls_material, RecordingIssuer(pck_hierarchy, zero_user_data=True))
        client_factory = functools.partial(TrustBootstrapClient, options=verification_options)

        async with Deployment(bundle, tls_material) as deployment:
            config = ClientConfig(
                cert_service=deployment.cert_service_url,
                proxy_url=deployment.proxy_url,
                fetch_timeout=5,
            )
            with patch('attested_proxy.cli.TrustBootstrapClient', client_factory):
                exit_code = await asyncio.to_thread(run_client, config)

        assert exit_code == 1
        assert deployment.upstream_hits == 0
