"""
Signature checks that make a parsed TDX quote trustworthy.

A quote is accepted when its PCK chain ends in a trusted root, the PCK leaf
signed the QE report, the QE report commits to the attestation key, and that
key signed the quote. Collateral (TCB info, QE identity, CRLs) is not fetched.
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, encode_dss_signature

from .abi_tdx import (
    Quote,
    ATTESTATION_KEY_SIZE,
    ECDSA_P256_COMPONENT_SIZE,
    PCK_CERT_CHAIN_COUNT,
    SHA256_HASH_SIZE,
    SIGNATURE_SIZE,
)
from .cert_utils import CertificateChainError, parse_pem_chain, verify_chain


class TdxVerificationError(Exception):
    """A quote failed one of the signature or chain checks."""


@dataclass
class PCKCertificateChain:
    pck_cert: x509.Certificate
    intermediate_cert: x509.Certificate
    root_cert: x509.Certificate

    def certificates(self) -> List[x509.Certificate]:
        return [self.pck_cert, self.intermediate_cert, self.root_cert]


def p256_key_from_point(point: bytes) -> ec.EllipticCurvePublicKey:
    """Attestation keys travel as a bare X || Y point."""
    if len(point) != ATTESTATION_KEY_SIZE:
        raise TdxVerificationError(f"attestation key has {len(point)} bytes, expected {ATTESTATION_KEY_SIZE}")
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), b'\x04' + point)
    except (ValueError, TypeError) as e:
        raise TdxVerificationError(f"Invalid attestation key: {e}") from e


def raw_signature_to_der(signature: bytes) -> bytes:
    if len(signature) != SIGNATURE_SIZE:
        raise TdxVerificationError(f"signature has {len(signature)} bytes, expected {SIGNATURE_SIZE}")
    half = ECDSA_P256_COMPONENT_SIZE
    return encode_dss_signature(
        int.from_bytes(signature[:half], 'big'),
        int.from_bytes(signature[half:], 'big'),
    )


def extract_pck_cert_chain(quote: Quote) -> PCKCertificateChain:
    pem = quote.signed_data.qe_report_data.pck_cert_chain_data.cert_data
    if not pem:
        raise TdxVerificationError("PCK certificate chain is empty")
    try:
        certs = parse_pem_chain(pem)
    except CertificateChainError as e:
        raise TdxVerificationError(f"unreadable PCK certificate chain: {e}") from e
    if len(certs) != PCK_CERT_CHAIN_COUNT:
        raise TdxVerificationError(
            f"PCK certificate chain should contain {PCK_CERT_CHAIN_COUNT} certificates, got {len(certs)}"
        )
    return PCKCertificateChain(*certs)


def verify_pck_chain(
    chain: PCKCertificateChain,
    trusted_roots: Sequence[x509.Certificate],
    now: Optional[datetime] = None,
) -> None:
    try:
        verify_chain(chain.certificates(), trusted_roots, "PCK certificate chain", now=now)
    except CertificateChainError as e:
        raise TdxVerificationError(str(e)) from e


def verify_quote_signature(quote: Quote) -> None:
    """
    The attestation key signs SHA-256 of everything before the signed-data
    section: header and body, and for V5 the body descriptor as well.
    """
    key = p256_key_from_point(quote.signed_data.attestation_key)
    digest = hashlib.sha256(quote.signed_message()).digest()
    try:
        key.verify(
            raw_signature_to_der(quote.signed_data.signature),
            digest,
            ec.ECDSA(Prehashed(hashes.SHA256())),
        )
    except InvalidSignature:
        raise TdxVerificationError("quote signature does not match the attestation key") from None


def verify_qe_report_signature(quote: Quote, pck_cert: x509.Certificate) -> None:
    qe = quote.signed_data.qe_report_data
    signature = raw_signature_to_der(qe.qe_report_signature)
    try:
        pck_cert.public_key().verify(signature, qe.qe_report, ec.ECDSA(hashes.SHA256()))
    except InvalidSignature:
        raise TdxVerificationError("QE report signature is not from the PCK certificate") from None
    except (TypeError, AttributeError, ValueError, UnsupportedAlgorithm) as e:
        raise TdxVerificationError(f"PCK certificate has unexpected key type: {e}") from e


def verify_qe_report_data_binding(quote: Quote) -> None:
    """QE report_data must be SHA-256(attestation_key || qe_auth_data) || 32 zero bytes."""
    qe = quote.signed_data.qe_report_data
    commitment = hashlib.sha256(quote.signed_data.attestation_key + qe.qe_auth_data).digest()
    if qe.qe_report_parsed.report_data != commitment + b'\x00' * SHA256_HASH_SIZE:
        raise TdxVerificationError("QE report data binding verification failed: attestation key is not committed")


def verify_tdx_quote(
    quote: Quote,
    trusted_roots: Sequence[x509.Certificate],
    now: Optional[datetime] = None,
) -> PCKCertificateChain:
    """
    Run every check against a parsed quote and return the verified PCK chain.

    now fixes the instant used for certificate validity; the current time
    when omitted. Raises TdxVerificationError on the first failed check.
    """
    chain = extract_pck_cert_chain(quote)
    verify_pck_chain(chain, trusted_roots, now=now)
    verify_qe_report_signature(quote, chain.pck_cert)
    verify_qe_report_data_binding(quote)
    verify_quote_signature(quote)
    return chain
