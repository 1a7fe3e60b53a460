"""
Client side of the attested trust bootstrap.

TrustBootstrapClient fetches the certificate bundle over plaintext HTTP and
decides, in a fixed order, whether the certificate may be used as the sole
TLS root for talking to the proxy:

1. fetch and decode the bundle            -> FetchFailed
2. parse the quote                        -> MalformedQuote
3. require a supported quote version      -> UnsupportedQuoteType
4. verify the quote cryptographically     -> AttestationInvalid
5. compare the quote user data with the
   certificate digest                     -> BindingMismatch
6. build a trust store holding only the
   certificate                            -> InvalidCertificate

The first failing step ends the attempt with a Rejected decision. Only a
Trusted decision carries an SSL context, and the HTTP client helpers refuse
anything else, so a failed bootstrap can never degrade into an
unauthenticated connection.
"""

import logging
import ssl
from dataclasses import dataclass, field
from enum import Enum
from typing import AbstractSet, Optional, Union

import httpx
import requests
from cryptography.hazmat.primitives import serialization

from .attestation import (
    AttestationVerificationError,
    AttestationVerifier,
    DEFAULT_VERIFICATION_OPTIONS,
    MalformedQuoteError,
    ParsedQuote,
    QuoteVersion,
    TdxQuoteVerifier,
    VerificationOptions,
)
from .attestation.cert_utils import CertificateChainError, parse_pem_chain
from .binder import certificate_digest, user_data_matches
from .bundle import CertBundle, CertBundleDecodeError

logger = logging.getLogger(__name__)

DEFAULT_SUPPORTED_VERSIONS = frozenset({QuoteVersion.V4})


class RejectionReason(str, Enum):
    """Which verification step refused the certificate."""
    FETCH_FAILED = "FetchFailed"
    MALFORMED_QUOTE = "MalformedQuote"
    UNSUPPORTED_QUOTE_TYPE = "UnsupportedQuoteType"
    ATTESTATION_INVALID = "AttestationInvalid"
    BINDING_MISMATCH = "BindingMismatch"
    INVALID_CERTIFICATE = "InvalidCertificate"


@dataclass(frozen=True)
class Trusted:
    """The certificate passed every check; ssl_context trusts only it."""
    certificate: bytes
    ssl_context: ssl.SSLContext = field(repr=False, compare=False)


@dataclass(frozen=True)
class Rejected:
    reason: RejectionReason
    detail: str = ""


TrustDecision = Union[Trusted, Rejected]


class TrustRejectedError(Exception):
    """Raised when a trusted connection is requested without a Trusted decision"""

    def __init__(self, rejection: Rejected):
        super().__init__(f"{rejection.reason.value}: {rejection.detail}")
        self.rejection = rejection

    @property
    def reason(self) -> RejectionReason:
        return self.rejection.reason


def check_binding(cert: bytes, quote: ParsedQuote) -> bool:
    """True if the verified quote's user data commits to cert."""
    return user_data_matches(cert, quote.user_data())


def build_trust_store(cert: bytes) -> ssl.SSLContext:
    """
    Client SSL context whose only trust anchor is cert.

    Raises:
        ValueError: If cert does not hold exactly one PEM certificate
    """
    try:
        certs = parse_pem_chain(cert)
    except CertificateChainError as e:
        raise ValueError(str(e)) from e
    if len(certs) != 1:
        raise ValueError(f"expected exactly one certificate, got {len(certs)}")

    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_3
    ctx.load_verify_locations(
        cadata=certs[0].public_bytes(serialization.Encoding.PEM).decode("ascii")
    )
    return ctx


class TrustBootstrapClient:
    """Fetches and verifies attested certificate bundles."""

    def __init__(
        self,
        verifier: Optional[AttestationVerifier] = None,
        options: VerificationOptions = DEFAULT_VERIFICATION_OPTIONS,
        supported_versions: AbstractSet[QuoteVersion] = DEFAULT_SUPPORTED_VERSIONS,
        timeout: float = 10.0,
    ):
        self.verifier = verifier if verifier is not None else TdxQuoteVerifier()
        self.options = options
        self.supported_versions = frozenset(supported_versions)
        self.timeout = timeout

    def fetch_bundle(self, cert_service_url: str) -> CertBundle:
        """
        Raises:
            requests.RequestException: On network or HTTP status errors
            CertBundleDecodeError: If the body is not a bundle
        """
        response = requests.get(cert_service_url, timeout=self.timeout)
        response.raise_for_status()
        return CertBundle.from_json(response.content)

    def bootstrap(self, cert_service_url: str) -> TrustDecision:
        """Fetch the bundle from cert_service_url and decide whether to trust it."""
        try:
            bundle = self.fetch_bundle(cert_service_url)
        except (requests.RequestException, CertBundleDecodeError) as e:
            return _reject(RejectionReason.FETCH_FAILED, f"could not fetch bundle from {cert_service_url}: {e}")
        return self.evaluate(bundle)

    def evaluate(self, bundle: CertBundle) -> TrustDecision:
        """Run steps 2-6 of the pipeline on an already fetched bundle."""
        try:
            quote = self.verifier.parse_quote(bundle.quote)
        except MalformedQuoteError as e:
            return _reject(RejectionReason.MALFORMED_QUOTE, str(e))

        if quote.version not in self.supported_versions:
            return _reject(
                RejectionReason.UNSUPPORTED_QUOTE_TYPE,
                f"unsupported quote type: {type(quote).__name__} (version {int(quote.version)})",
            )

        try:
            self.verifier.verify(quote, self.options)
        except AttestationVerificationError as e:
            return _reject(RejectionReason.ATTESTATION_INVALID, str(e))

        if not check_binding(bundle.cert, quote):
            return _reject(
                RejectionReason.BINDING_MISMATCH,
                f"quote user data {bytes(quote.user_data()).hex()} does not commit to "
                f"certificate digest {certificate_digest(bundle.cert).hex()}",
            )

        try:
            ssl_context = build_trust_store(bundle.cert)
        except (ValueError, ssl.SSLError) as e:
            return _reject(RejectionReason.INVALID_CERTIFICATE, f"invalid certificate received: {e}")

        logger.info("trusting certificate with digest %s", certificate_digest(bundle.cert).hex())
        return Trusted(certificate=bundle.cert, ssl_context=ssl_context)

    def bootstrap_or_raise(self, cert_service_url: str) -> Trusted:
        """Like bootstrap, but raises TrustRejectedError instead of returning Rejected."""
        decision = self.bootstrap(cert_service_url)
        if isinstance(decision, Rejected):
            raise TrustRejectedError(decision)
        return decision


def _reject(reason: RejectionReason, detail: str) -> Rejected:
    logger.warning("certificate rejected (%s): %s", reason.value, detail)
    return Rejected(reason=reason, detail=detail)


def _require_trusted(decision: TrustDecision) -> Trusted:
    if isinstance(decision, Trusted):
        return decision
    if isinstance(decision, Rejected):
        raise TrustRejectedError(decision)
    raise TypeError(f"expected a TrustDecision, got {type(decision).__name__}")


def make_trusted_http_client(decision: TrustDecision, **kwargs) -> httpx.Client:
    """httpx.Client that only completes TLS handshakes chaining to the trusted certificate."""
    trusted = _require_trusted(decision)
    return httpx.Client(verify=trusted.ssl_context, **kwargs)


def make_trusted_async_http_client(decision: TrustDecision, **kwargs) -> httpx.AsyncClient:
    """Async variant of make_trusted_http_client."""
    trusted = _require_trusted(decision)
    return httpx.AsyncClient(verify=trusted.ssl_context, **kwargs)
