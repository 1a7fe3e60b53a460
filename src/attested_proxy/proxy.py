"""
TLS-terminating reverse proxy to a single upstream.

Requests are forwarded with their method, path, query, headers and body;
the upstream response status, headers and raw body are streamed back.
Hop-by-hop headers are not forwarded in either direction. An upstream that
cannot be reached yields 502 for that request only.
"""

import logging
import ssl
from typing import Optional

import httpx
from aiohttp import web

from .server import DEFAULT_GRACE_PERIOD, ManagedServer

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

DEFAULT_UPSTREAM_TIMEOUT = httpx.Timeout(60.0, connect=10.0)

_UPSTREAM_CLIENT = web.AppKey("upstream_client", httpx.AsyncClient)


def make_server_ssl_context(cert_file: str, key_file: str) -> ssl.SSLContext:
    """
    Server context that only speaks TLS 1.3 and presents cert_file.

    Raises:
        OSError, ssl.SSLError: If the certificate or key cannot be loaded
    """
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_3
    ctx.load_cert_chain(cert_file, key_file)
    return ctx


def _join_paths(base: str, path: str) -> str:
    if base.endswith("/") and path.startswith("/"):
        return base + path[1:]
    if not base.endswith("/") and not path.startswith("/"):
        return base + "/" + path
    return base + path


def upstream_url_for(upstream: httpx.URL, raw_path: str) -> httpx.URL:
    """Append a request's raw path and query to the upstream base URL."""
    base_path, _, base_query = upstream.raw_path.decode("ascii").partition("?")
    path, _, query = raw_path.partition("?")
    joined = _join_paths(base_path, path)
    if base_query and query:
        query = f"{base_query}&{query}"
    else:
        query = base_query or query
    if query:
        joined = f"{joined}?{query}"
    return upstream.copy_with(raw_path=joined.encode("ascii"))


def _hop_by_hop(connection_values) -> set:
    """Standard hop-by-hop headers plus any named in Connection."""
    names = set(HOP_BY_HOP_HEADERS)
    for value in connection_values:
        names.update(token.strip().lower() for token in value.split(",") if token.strip())
    return names


def _request_headers(request: web.Request) -> list:
    skip = _hop_by_hop(request.headers.getall("Connection", [])) | {"content-length"}
    headers = [(k, v) for k, v in request.headers.items() if k.lower() not in skip]
    forwarded_for = request.headers.get("X-Forwarded-For")
    if request.remote:
        forwarded_for = f"{forwarded_for}, {request.remote}" if forwarded_for else request.remote
    if forwarded_for:
        headers = [(k, v) for k, v in headers if k.lower() != "x-forwarded-for"]
        headers.append(("X-Forwarded-For", forwarded_for))
    return headers


def create_proxy_app(upstream_url: str, client: Optional[httpx.AsyncClient] = None) -> web.Application:
    """Application forwarding every request to upstream_url."""
    upstream = httpx.URL(upstream_url)
    if client is None:
        client = httpx.AsyncClient(timeout=DEFAULT_UPSTREAM_TIMEOUT, follow_redirects=False)

    async def handle_proxy(request: web.Request) -> web.StreamResponse:
        target = upstream_url_for(upstream, request.raw_path)
        body = await request.read()
        # Built directly rather than via client.build_request so the client's
        # default headers are not merged in.
        upstream_request = httpx.Request(
            request.method,
            target,
            headers=_request_headers(request),
            content=body,
        )

        try:
            upstream_response = await client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            logger.error("proxy error forwarding %s %s: %s", request.method, request.raw_path, e)
            return web.Response(status=502, text="Bad Gateway")

        response = web.StreamResponse(
            status=upstream_response.status_code,
            reason=upstream_response.reason_phrase or None,
        )
        skip = _hop_by_hop(upstream_response.headers.get_list("Connection"))
        for key, value in upstream_response.headers.multi_items():
            if key.lower() not in skip:
                response.headers.add(key, value)

        try:
            await response.prepare(request)
            async for chunk in upstream_response.aiter_raw():
                await response.write(chunk)
            await response.write_eof()
        except (httpx.HTTPError, OSError) as e:
            logger.error("proxy error streaming response for %s %s: %s", request.method, request.raw_path, e)
        finally:
            await upstream_response.aclose()
        return response

    async def close_client(app: web.Application) -> None:
        await app[_UPSTREAM_CLIENT].aclose()

    app = web.Application(client_max_size=64 * 1024 * 1024)
    app[_UPSTREAM_CLIENT] = client
    app.router.add_route("*", "/{tail:.*}", handle_proxy)
    app.on_cleanup.append(close_client)
    return app


class TLSTerminatingReverseProxy(ManagedServer):
    """Terminates TLS 1.3 and forwards everything to one upstream."""

    def __init__(
        self,
        upstream_url: str,
        host: str,
        port: int,
        ssl_context: ssl.SSLContext,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(
            "proxy",
            create_proxy_app(upstream_url, client),
            host,
            port,
            ssl_context=ssl_context,
            grace_period=grace_period,
            auto_decompress=False,
        )
        self.upstream_url = upstream_url
