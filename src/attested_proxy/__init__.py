__version__ = "0.1.0"

from .binder import (
    AttestationRequestFailed,
    AttestationUnavailable,
    CertificateAttestationBinder,
    ConfigfsTsmQuoteIssuer,
    DcapHttpQuoteIssuer,
)
from .bundle import CertBundle
from .client import (
    Rejected,
    RejectionReason,
    Trusted,
    TrustBootstrapClient,
    TrustRejectedError,
    make_trusted_async_http_client,
    make_trusted_http_client,
)
from .distribution import AttestedCertDistributionServer
from .lifecycle import LifecycleState, ServiceLifecycleCoordinator, ShutdownSignal
from .proxy import TLSTerminatingReverseProxy, make_server_ssl_context

__all__ = [
    "AttestationRequestFailed",
    "AttestationUnavailable",
    "AttestedCertDistributionServer",
    "CertBundle",
    "CertificateAttestationBinder",
    "ConfigfsTsmQuoteIssuer",
    "DcapHttpQuoteIssuer",
    "LifecycleState",
    "Rejected",
    "RejectionReason",
    "ServiceLifecycleCoordinator",
    "ShutdownSignal",
    "TLSTerminatingReverseProxy",
    "Trusted",
    "TrustBootstrapClient",
    "TrustRejectedError",
    "make_server_ssl_context",
    "make_trusted_async_http_client",
    "make_trusted_http_client",
]
