"""
Command line entry points.

attested-proxy-server: load the CA certificate, bind it into a quote, then
run the bootstrap endpoint and the TLS proxy until SIGINT/SIGTERM.

attested-proxy-client: bootstrap trust from the certificate service and
issue one GET through the proxy with the attested certificate as sole root.
"""

import argparse
import asyncio
import logging
import ssl
import sys
from pathlib import Path
from typing import List, Optional

import httpx

from . import __version__
from .binder import (
    BinderError,
    CertificateAttestationBinder,
    ConfigfsTsmQuoteIssuer,
    DcapHttpQuoteIssuer,
    QuoteIssuer,
)
from .bundle import CertBundle
from .client import Rejected, TrustBootstrapClient, make_trusted_http_client
from .config import QUOTE_PROVIDERS, ClientConfig, ConfigError, ServerConfig, parse_listen_addr
from .distribution import AttestedCertDistributionServer
from .lifecycle import ServiceLifecycleCoordinator
from .logs import setup_logging
from .proxy import TLSTerminatingReverseProxy, make_server_ssl_context

logger = logging.getLogger(__name__)


def _add_logging_args(parser: argparse.ArgumentParser, service: str) -> None:
    parser.add_argument('--log-json', action='store_true', help='log in JSON format')
    parser.add_argument('--log-debug', action='store_true', help='log debug messages')
    parser.add_argument('--log-uid', action='store_true', help='generate a uuid and add to all log messages')
    parser.add_argument('--log-service', default=service, help="add 'service' tag to logs")


def build_server_parser() -> argparse.ArgumentParser:
    defaults = ServerConfig()
    parser = argparse.ArgumentParser(
        prog='attested-proxy-server',
        description='Serve an attested CA certificate and a TLS-terminating proxy',
    )
    parser.add_argument('--cert-service-listen-addr', default=defaults.cert_service_listen_addr,
                        help='address to serve certificate on')
    parser.add_argument('--proxy-listen-addr', default=defaults.proxy_listen_addr,
                        help='address proxy should listen on')
    parser.add_argument('--proxy-target-addr', default=defaults.proxy_target_addr,
                        help='address proxy should forward to')
    parser.add_argument('--quote-provider', default=defaults.quote_provider, choices=QUOTE_PROVIDERS,
                        help='how to obtain the certificate quote')
    parser.add_argument('--dcap-addr', default=defaults.dcap_addr,
                        help='quote service to request the certificate quote from')
    parser.add_argument('--tsm-path', default=defaults.tsm_path,
                        help='configfs-tsm report directory')
    parser.add_argument('--certificate-file', default=defaults.certificate_file,
                        help='certificate to present (PEM)')
    parser.add_argument('--ca-certificate-file', default=defaults.ca_certificate_file,
                        help='CA certificate to attest and distribute (PEM)')
    parser.add_argument('--private-key-file', default=defaults.private_key_file,
                        help='private key for the certificate (PEM)')
    parser.add_argument('--shutdown-grace-period', type=float, default=defaults.shutdown_grace_period,
                        help='seconds to let in-flight requests finish on shutdown')
    parser.add_argument('--attestation-timeout', type=float, default=defaults.attestation_timeout,
                        help='seconds to wait for the quote service')
    _add_logging_args(parser, 'proxy')
    return parser


def build_client_parser() -> argparse.ArgumentParser:
    defaults = ClientConfig()
    parser = argparse.ArgumentParser(
        prog='attested-proxy-client',
        description='Check attested TLS connectivity to the proxy',
    )
    parser.add_argument('--cert-service', default=defaults.cert_service, help='certificate service url')
    parser.add_argument('--proxy-url', default=defaults.proxy_url, help='proxy url')
    parser.add_argument('--fetch-timeout', type=float, default=defaults.fetch_timeout,
                        help='seconds to wait for each request')
    _add_logging_args(parser, 'proxy-client')
    return parser


def make_quote_issuer(config: ServerConfig) -> QuoteIssuer:
    if config.quote_provider == 'configfs-tsm':
        return ConfigfsTsmQuoteIssuer(Path(config.tsm_path))
    return DcapHttpQuoteIssuer(config.dcap_addr, timeout=config.attestation_timeout)


def build_cert_bundle(config: ServerConfig, issuer: Optional[QuoteIssuer] = None) -> CertBundle:
    """
    Read the CA certificate and bind it into a quote.

    Raises:
        OSError: If the CA certificate cannot be read
        BinderError: If no quote could be obtained
    """
    ca_cert = Path(config.ca_certificate_file).read_bytes()
    binder = CertificateAttestationBinder(issuer if issuer is not None else make_quote_issuer(config))
    return CertBundle(cert=ca_cert, quote=binder.bind(ca_cert))


async def serve(config: ServerConfig, bundle: CertBundle, ssl_context: ssl.SSLContext) -> int:
    cert_host, cert_port = parse_listen_addr(config.cert_service_listen_addr)
    proxy_host, proxy_port = parse_listen_addr(config.proxy_listen_addr)

    coordinator = ServiceLifecycleCoordinator([
        AttestedCertDistributionServer(
            bundle, cert_host, cert_port, grace_period=config.shutdown_grace_period,
        ),
        TLSTerminatingReverseProxy(
            config.proxy_target_addr, proxy_host, proxy_port, ssl_context,
            grace_period=config.shutdown_grace_period,
        ),
    ])
    coordinator.install_signal_handlers()

    result = await coordinator.run()
    if not result.clean:
        for name, error in result.failures.items():
            logger.error("%s exited with error: %s", name, error)
        return 1
    return 0


def run_server(config: ServerConfig) -> int:
    try:
        config.validate()
        bundle = build_cert_bundle(config)
        ssl_context = make_server_ssl_context(config.certificate_file, config.private_key_file)
    except ConfigError as e:
        logger.error("invalid configuration: %s", e)
        return 1
    except OSError as e:
        logger.error("could not read certificate data: %s", e)
        return 1
    except BinderError as e:
        logger.error("could not get attestation for cert: %s", e)
        return 1
    except ssl.SSLError as e:
        logger.error("could not load TLS certificate/key: %s", e)
        return 1

    return asyncio.run(serve(config, bundle, ssl_context))


def run_client(config: ClientConfig) -> int:
    try:
        config.validate()
    except ConfigError as e:
        logger.error("invalid configuration: %s", e)
        return 1

    decision = TrustBootstrapClient(timeout=config.fetch_timeout).bootstrap(config.cert_service)
    if isinstance(decision, Rejected):
        logger.error("could not establish trust (%s): %s", decision.reason.value, decision.detail)
        return 1

    try:
        with make_trusted_http_client(decision, timeout=config.fetch_timeout) as http:
            response = http.get(config.proxy_url)
    except httpx.HTTPError as e:
        logger.error("could not get proxied service: %s", e)
        return 1

    logger.info("Received status=%d body=%s", response.status_code, response.text)
    return 0


def server_main(argv: Optional[List[str]] = None) -> int:
    args = build_server_parser().parse_args(argv)
    setup_logging(args.log_service, __version__, debug=args.log_debug,
                  json_format=args.log_json, with_uid=args.log_uid)
    config = ServerConfig(
        cert_service_listen_addr=args.cert_service_listen_addr,
        proxy_listen_addr=args.proxy_listen_addr,
        proxy_target_addr=args.proxy_target_addr,
        quote_provider=args.quote_provider,
        dcap_addr=args.dcap_addr,
        tsm_path=args.tsm_path,
        certificate_file=args.certificate_file,
        ca_certificate_file=args.ca_certificate_file,
        private_key_file=args.private_key_file,
        shutdown_grace_period=args.shutdown_grace_period,
        attestation_timeout=args.attestation_timeout,
    )
    return run_server(config)


def client_main(argv: Optional[List[str]] = None) -> int:
    args = build_client_parser().parse_args(argv)
    setup_logging(args.log_service, __version__, debug=args.log_debug,
                  json_format=args.log_json, with_uid=args.log_uid)
    config = ClientConfig(
        cert_service=args.cert_service,
        proxy_url=args.proxy_url,
        fetch_timeout=args.fetch_timeout,
    )
    return run_client(config)


def main() -> None:
    sys.exit(server_main())


if __name__ == '__main__':
    main()
