"""Wire format of the certificate bundle served on the bootstrap endpoint."""

import base64
import binascii
import json
from dataclasses import dataclass


class CertBundleDecodeError(Exception):
    """Raised when a bootstrap response is not a well-formed bundle"""
    pass


@dataclass(frozen=True)
class CertBundle:
    """A CA certificate (PEM) and the quote committing to its digest."""
    cert: bytes
    quote: bytes

    def to_json(self) -> bytes:
        return json.dumps({
            "cert": base64.b64encode(self.cert).decode("ascii"),
            "quote": base64.b64encode(self.quote).decode("ascii"),
        }).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes) -> "CertBundle":
        """
        Decode {"cert": <base64>, "quote": <base64>}.

        Raises:
            CertBundleDecodeError: On invalid JSON, missing or non-string
                fields, or invalid base64
        """
        try:
            doc = json.loads(data)
        except (ValueError, UnicodeDecodeError) as e:
            raise CertBundleDecodeError(f"Bundle is not valid JSON: {e}") from e
        if not isinstance(doc, dict):
            raise CertBundleDecodeError("Bundle must be a JSON object")

        fields = {}
        for name in ("cert", "quote"):
            value = doc.get(name)
            if not isinstance(value, str):
                raise CertBundleDecodeError(f"Bundle field '{name}' missing or not a string")
            try:
                fields[name] = base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError) as e:
                raise CertBundleDecodeError(f"Bundle field '{name}' is not valid base64: {e}") from e
        return cls(**fields)
