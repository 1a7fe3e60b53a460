"""
Certificate helpers for quote verification.

PCK certificates carry no SAN extension, so chains are verified by hand
instead of through cryptography's PolicyBuilder verifiers.
"""

from datetime import datetime, timezone
from typing import List, Optional, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import serialization


class CertificateChainError(Exception):
    """Raised when certificate chain parsing or verification fails."""
    pass


_PEM_END = b'-----END CERTIFICATE-----'
_PADDING = b'\x00\n\r\t '


def parse_pem_chain(pem_data: bytes) -> List[x509.Certificate]:
    """
    Parse concatenated PEM certificates.

    Leading/trailing whitespace and the null padding found in TDX quotes
    between and after certificates are ignored.

    Raises:
        CertificateChainError: If a certificate block cannot be parsed
    """
    certs = []
    remaining = pem_data

    while remaining:
        remaining = remaining.lstrip(_PADDING)
        if not remaining:
            break

        try:
            cert = x509.load_pem_x509_certificate(remaining)
        except ValueError as e:
            raise CertificateChainError(f"Failed to parse PEM certificate: {e}") from e
        certs.append(cert)

        end_pos = remaining.find(_PEM_END)
        if end_pos == -1:
            break
        remaining = remaining[end_pos + len(_PEM_END):]

    return certs


def public_key_der(cert: x509.Certificate) -> bytes:
    """SubjectPublicKeyInfo of a certificate, DER encoded."""
    return cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def verify_chain(
    certs: List[x509.Certificate],
    trusted_roots: Sequence[x509.Certificate],
    chain_name: str = "Certificate chain",
    now: Optional[datetime] = None,
) -> x509.Certificate:
    """
    Verify a certificate chain against a set of trusted roots.

    Steps:
    1. The chain's last certificate must carry the public key of one of the
       trusted roots
    2. Every certificate must be within its validity period
    3. Each certificate must be issued by the next one in the chain, and the
       chain's root by the matching trusted root

    Args:
        certs: [leaf, intermediate(s)..., root]
        trusted_roots: Acceptable trust anchors
        chain_name: Human-readable name for error messages
        now: Verification time, defaults to the current UTC time

    Returns:
        The trusted root the chain terminates in

    Raises:
        CertificateChainError: If chain verification fails
    """
    if len(certs) < 2:
        raise CertificateChainError(
            f"{chain_name} must contain at least 2 certificates (leaf and root)"
        )
    if not trusted_roots:
        raise CertificateChainError(f"{chain_name}: no trusted roots configured")

    chain_root = certs[-1]
    chain_root_key = public_key_der(chain_root)
    anchor = next(
        (root for root in trusted_roots if public_key_der(root) == chain_root_key),
        None,
    )
    if anchor is None:
        raise CertificateChainError(
            f"{chain_name} root certificate does not match any trusted root"
        )

    if now is None:
        now = datetime.now(timezone.utc)
    for cert in certs:
        if now < cert.not_valid_before_utc:
            raise CertificateChainError(
                f"{chain_name}: certificate not yet valid (not before {cert.not_valid_before_utc})"
            )
        if now > cert.not_valid_after_utc:
            raise CertificateChainError(
                f"{chain_name}: certificate expired (not after {cert.not_valid_after_utc})"
            )

    for cert, issuer in zip(certs, certs[1:]):
        try:
            cert.verify_directly_issued_by(issuer)
        except Exception as e:
            raise CertificateChainError(
                f"{chain_name}: certificate chain signature verification failed: {e}"
            ) from e

    try:
        chain_root.verify_directly_issued_by(anchor)
    except Exception as e:
        raise CertificateChainError(
            f"{chain_name}: root certificate verification against trusted root failed: {e}"
        ) from e

    return anchor
