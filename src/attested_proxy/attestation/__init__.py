from .abi_tdx import QuoteVersion, QuoteV4, QuoteV5, parse_quote
from .verifier import (
    AttestationVerifier,
    AttestationVerificationError,
    DEFAULT_VERIFICATION_OPTIONS,
    InvalidQuoteError,
    MalformedQuoteError,
    ParsedQuote,
    TdxQuoteVerifier,
    VerificationOptions,
)

__all__ = [
    'AttestationVerifier',
    'AttestationVerificationError',
    'DEFAULT_VERIFICATION_OPTIONS',
    'InvalidQuoteError',
    'MalformedQuoteError',
    'ParsedQuote',
    'QuoteVersion',
    'QuoteV4',
    'QuoteV5',
    'TdxQuoteVerifier',
    'VerificationOptions',
    'parse_quote',
]
