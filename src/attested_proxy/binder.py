"""
Binding a CA certificate into an attestation quote.

The commitment placed in the quote is SHA-256 over the exact PEM bytes of
the certificate. TDX report_data is 64 bytes, so the commitment occupies
the first 32 bytes and the rest is zero; the bootstrap client checks the
whole field.
"""

import hashlib
import hmac
import logging
import os
import time
from pathlib import Path
from typing import Protocol

import requests

logger = logging.getLogger(__name__)

DIGEST_SIZE = 32
USER_DATA_SIZE = 64

ATTEST_PATH = "/attest/"
TSM_REPORT_PATH = Path("/sys/kernel/config/tsm/report")


class BinderError(Exception):
    """Base class for errors obtaining a certificate quote"""
    pass


class AttestationUnavailable(BinderError):
    """Raised when the quote issuer cannot be reached"""
    pass


class AttestationRequestFailed(BinderError):
    """Raised when the quote issuer answers but does not produce a quote"""
    pass


def certificate_digest(cert: bytes) -> bytes:
    """SHA-256 over the certificate bytes as distributed."""
    return hashlib.sha256(cert).digest()


def expected_user_data(cert: bytes) -> bytes:
    """The quote user data that binds a quote to cert."""
    return certificate_digest(cert).ljust(USER_DATA_SIZE, b'\x00')


def user_data_matches(cert: bytes, user_data: bytes) -> bool:
    """Constant-time comparison of a quote's user data against cert."""
    return hmac.compare_digest(expected_user_data(cert), bytes(user_data))


class QuoteIssuer(Protocol):
    def request_quote(self, commitment: bytes) -> bytes:
        """
        Obtain a quote whose user data commits to commitment.

        Raises:
            AttestationUnavailable: If the issuer cannot be reached
            AttestationRequestFailed: If the issuer does not return a quote
        """
        ...


class DcapHttpQuoteIssuer:
    """
    Requests quotes from an HTTP quote service.

    The service answers GET {base_url}/attest/{hex(commitment)} with the raw
    quote bytes.
    """

    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def request_quote(self, commitment: bytes) -> bytes:
        url = f"{self.base_url}{ATTEST_PATH}{commitment.hex()}"
        try:
            response = requests.get(url, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise AttestationUnavailable(f"Quote service {self.base_url} unreachable: {e}") from e
        except requests.RequestException as e:
            raise AttestationRequestFailed(f"Quote request to {url} failed: {e}") from e

        if not response.ok:
            raise AttestationRequestFailed(
                f"Quote service returned HTTP {response.status_code}: {response.text[:200]}"
            )
        if not response.content:
            raise AttestationRequestFailed("Quote service returned an empty quote")
        return response.content


class ConfigfsTsmQuoteIssuer:
    """
    Requests quotes through the Linux configfs-tsm interface.

    Writes the commitment, zero padded to 64 bytes, to
    <tsm>/report/<id>/inblob and reads the quote from outblob.
    """

    def __init__(self, tsm_path: Path = TSM_REPORT_PATH):
        self.tsm_path = Path(tsm_path)

    def request_quote(self, commitment: bytes) -> bytes:
        if len(commitment) > USER_DATA_SIZE:
            raise AttestationRequestFailed(
                f"Commitment is {len(commitment)} bytes, at most {USER_DATA_SIZE} fit in report data"
            )
        if not self.tsm_path.is_dir():
            raise AttestationUnavailable(f"configfs-tsm not available at {self.tsm_path}")

        report_dir = self.tsm_path / f"report_{os.getpid()}_{int(time.time() * 1000)}"
        try:
            report_dir.mkdir()
        except OSError as e:
            raise AttestationUnavailable(f"Cannot create TSM report entry {report_dir}: {e}") from e

        try:
            (report_dir / "inblob").write_bytes(commitment.ljust(USER_DATA_SIZE, b'\x00'))
            quote = (report_dir / "outblob").read_bytes()
        except OSError as e:
            raise AttestationRequestFailed(f"TSM report generation failed: {e}") from e
        finally:
            try:
                report_dir.rmdir()
            except OSError as e:
                logger.warning("could not remove TSM report entry %s: %s", report_dir, e)

        if not quote:
            raise AttestationRequestFailed("TSM returned an empty quote")
        return quote


class CertificateAttestationBinder:
    """Obtains a quote committing to a CA certificate's digest."""

    def __init__(self, issuer: QuoteIssuer):
        self.issuer = issuer

    def bind(self, cert: bytes) -> bytes:
        """
        Request a quote for cert. A single attempt is made.

        Raises:
            AttestationUnavailable, AttestationRequestFailed
        """
        digest = certificate_digest(cert)
        logger.info("requesting quote for certificate digest %s", digest.hex())
        quote = self.issuer.request_quote(digest)
        logger.info("obtained quote (%d bytes)", len(quote))
        return quote
