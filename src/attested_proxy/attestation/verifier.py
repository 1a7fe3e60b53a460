"""
Pluggable quote verification.

The bootstrap client only talks to an AttestationVerifier: a structural
parser and a cryptographic check under a verification policy. Any quote
scheme can be plugged in by implementing the two methods and raising
MalformedQuoteError / InvalidQuoteError. TdxQuoteVerifier is the default
implementation for Intel TDX quotes.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol, Tuple, runtime_checkable

from cryptography import x509

from .abi_tdx import QuoteVersion, QuoteV4, QuoteV5, TdxQuoteParseError, parse_quote
from .intel_root_ca import get_intel_root_ca
from .verify_tdx import TdxVerificationError, verify_tdx_quote

logger = logging.getLogger(__name__)


class AttestationVerificationError(Exception):
    """Base class for quote verification errors"""
    pass


class MalformedQuoteError(AttestationVerificationError):
    """Raised when quote bytes cannot be parsed into a known quote format"""
    pass


class InvalidQuoteError(AttestationVerificationError):
    """Raised when a parsed quote fails cryptographic verification"""
    pass


@runtime_checkable
class ParsedQuote(Protocol):
    """Structural view of a quote that the bootstrap client relies on."""

    @property
    def version(self) -> QuoteVersion: ...

    def user_data(self) -> bytes: ...


@dataclass(frozen=True)
class VerificationOptions:
    """
    Verification policy.

    The default trusts the Intel SGX Root CA and checks certificate validity
    against the current time.
    """
    trusted_roots: Tuple[x509.Certificate, ...] = field(
        default_factory=lambda: (get_intel_root_ca(),)
    )
    current_time: Optional[datetime] = None


DEFAULT_VERIFICATION_OPTIONS = VerificationOptions()


class AttestationVerifier(Protocol):
    def parse_quote(self, raw_quote: bytes) -> ParsedQuote:
        """Parse raw quote bytes, raising MalformedQuoteError on failure."""
        ...

    def verify(self, quote: ParsedQuote, options: VerificationOptions = DEFAULT_VERIFICATION_OPTIONS) -> None:
        """Verify a parsed quote, raising InvalidQuoteError on failure."""
        ...


class TdxQuoteVerifier:
    """AttestationVerifier for Intel TDX QuoteV4/QuoteV5."""

    def parse_quote(self, raw_quote: bytes) -> ParsedQuote:
        try:
            quote = parse_quote(raw_quote)
        except TdxQuoteParseError as e:
            raise MalformedQuoteError(f"Failed to parse TDX quote: {e}") from e
        logger.debug("parsed quote: %s", quote.header)
        return quote

    def verify(self, quote: ParsedQuote, options: VerificationOptions = DEFAULT_VERIFICATION_OPTIONS) -> None:
        if not isinstance(quote, (QuoteV4, QuoteV5)):
            raise InvalidQuoteError(
                f"TdxQuoteVerifier cannot verify {type(quote).__name__}"
            )
        try:
            verify_tdx_quote(quote, options.trusted_roots, now=options.current_time)
        except TdxVerificationError as e:
            raise InvalidQuoteError(f"TDX quote verification failed: {e}") from e
