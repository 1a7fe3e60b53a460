"""Runtime configuration for the server and client entry points."""

import os
from dataclasses import dataclass
from typing import Tuple
from urllib.parse import urlparse

QUOTE_PROVIDERS = ("dcap-http", "configfs-tsm")


class ConfigError(Exception):
    """Raised when a configuration value is missing or unusable"""
    pass


def parse_listen_addr(addr: str) -> Tuple[str, int]:
    """
    Split "host:port" (or "[v6]:port") into its parts.

    Raises:
        ConfigError: If the address has no valid port
    """
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit() or not 0 <= int(port) <= 65535:
        raise ConfigError(f"invalid listen address {addr!r}, expected host:port")
    return host.strip("[]"), int(port)


def _require_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"{name} must be an http(s) URL, got {value!r}")


def _require_file(name: str, path: str) -> None:
    if not path or not os.path.isfile(path):
        raise ConfigError(f"{name} {path!r} does not exist or is not a file")


@dataclass(frozen=True)
class ServerConfig:
    cert_service_listen_addr: str = "0.0.0.0:8080"
    proxy_listen_addr: str = "0.0.0.0:8081"
    proxy_target_addr: str = "http://127.0.0.1:8082"
    quote_provider: str = "dcap-http"
    dcap_addr: str = "http://127.0.0.1:8091"
    tsm_path: str = "/sys/kernel/config/tsm/report"
    certificate_file: str = "server.crt"
    ca_certificate_file: str = "ca.crt"
    private_key_file: str = "server.key"
    shutdown_grace_period: float = 10.0
    attestation_timeout: float = 30.0

    def validate(self) -> None:
        parse_listen_addr(self.cert_service_listen_addr)
        parse_listen_addr(self.proxy_listen_addr)
        _require_url("proxy target address", self.proxy_target_addr)
        if self.quote_provider not in QUOTE_PROVIDERS:
            raise ConfigError(
                f"unknown quote provider {self.quote_provider!r}, expected one of {', '.join(QUOTE_PROVIDERS)}"
            )
        if self.quote_provider == "dcap-http":
            _require_url("DCAP address", self.dcap_addr)
        _require_file("certificate file", self.certificate_file)
        _require_file("CA certificate file", self.ca_certificate_file)
        _require_file("private key file", self.private_key_file)
        if self.shutdown_grace_period < 0:
            raise ConfigError("shutdown grace period must not be negative")
        if self.attestation_timeout <= 0:
            raise ConfigError("attestation timeout must be positive")


@dataclass(frozen=True)
class ClientConfig:
    cert_service: str = "http://127.0.0.1:8080"
    proxy_url: str = "https://127.0.0.1:8081"
    fetch_timeout: float = 10.0

    def validate(self) -> None:
        _require_url("certificate service URL", self.cert_service)
        _require_url("proxy URL", self.proxy_url)
        if urlparse(self.proxy_url).scheme != "https":
            raise ConfigError("proxy URL must use https")
        if self.fetch_timeout <= 0:
            raise ConfigError("fetch timeout must be positive")
