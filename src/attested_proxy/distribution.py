"""Plaintext endpoint publishing the CA certificate and its quote."""

import logging

from aiohttp import web

from .bundle import CertBundle
from .server import DEFAULT_GRACE_PERIOD, ManagedServer

logger = logging.getLogger(__name__)


def create_distribution_app(bundle: CertBundle) -> web.Application:
    """
    Application answering every GET with the bundle JSON.

    The body is serialized once here; requests only write it out.
    """
    body = bundle.to_json()

    async def handle_bundle(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={"Content-Type": "application/json"})
        response.content_length = len(body)
        try:
            await response.prepare(request)
            await response.write(body)
            await response.write_eof()
        except OSError as e:
            logger.error("could not respond with cert data to %s: %s", request.remote, e)
        return response

    app = web.Application()
    app.router.add_get("/{tail:.*}", handle_bundle, allow_head=False)
    return app


class AttestedCertDistributionServer(ManagedServer):
    """Serves a CertBundle computed before the server exists."""

    def __init__(self, bundle: CertBundle, host: str, port: int, grace_period: float = DEFAULT_GRACE_PERIOD):
        super().__init__(
            "cert service",
            create_distribution_app(bundle),
            host,
            port,
            grace_period=grace_period,
        )
        self.bundle = bundle
