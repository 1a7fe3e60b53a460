"""
TDX quote parsing structures and constants.

Parses Intel TDX attestation quotes into a closed set of variants keyed by
the header version:

- QuoteV4: header || TD report (TDX 1.0) || signed data
- QuoteV5: header || body descriptor || TD report (TDX 1.0 or 1.5) || signed data

Anything outside that set (other versions, non-TDX TEE types, unknown
attestation key types or QE vendors, truncated or inconsistent sizes) is
rejected with TdxQuoteParseError.
"""

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Union

# =============================================================================
# Constants
# =============================================================================

HEADER_SIZE = 0x30  # 48 bytes
TD_QUOTE_BODY_SIZE = 0x248  # 584 bytes (TDX 1.0)
TD_QUOTE_BODY_V15_SIZE = 0x288  # 648 bytes (TDX 1.5)
QE_REPORT_SIZE = 0x180  # 384 bytes
BODY_DESCRIPTOR_SIZE = 6  # 2 bytes type + 4 bytes size

QUOTE_V4_MIN_SIZE = 0x3FC  # 1020 bytes


class QuoteVersion(IntEnum):
    """Quote header versions this parser understands."""
    V4 = 4
    V5 = 5


class QuoteV5BodyType(IntEnum):
    """Body descriptor types carried by a QuoteV5."""
    TDX_10 = 2
    TDX_15 = 3


TEE_TDX = 0x00000081
ATTESTATION_KEY_TYPE_ECDSA_P256 = 2

CERT_DATA_TYPE_PCK_CERT_CHAIN = 5
CERT_DATA_TYPE_QE_REPORT = 6

RTMR_SIZE = 0x30  # 48 bytes
RTMR_COUNT = 4
REPORT_DATA_SIZE = 0x40  # 64 bytes
SIGNATURE_SIZE = 0x40  # 64 bytes
ATTESTATION_KEY_SIZE = 0x40  # 64 bytes
ECDSA_P256_COMPONENT_SIZE = 0x20  # 32 bytes per R or S component
SHA256_HASH_SIZE = 0x20
CERT_DATA_HEADER_SIZE = 6  # 2 bytes type + 4 bytes size
PCK_CERT_CHAIN_COUNT = 3  # leaf, intermediate, root

# Intel QE Vendor ID: 939a7233-f79c-4ca9-940a-0db3957f0607
INTEL_QE_VENDOR_ID = bytes.fromhex("939a7233f79c4ca9940a0db3957f0607")

# Header offsets
HEADER_VERSION_START = 0x00
HEADER_AK_TYPE_START = 0x02
HEADER_TEE_TYPE_START = 0x04
HEADER_QE_VENDOR_ID_START = 0x0C
HEADER_QE_VENDOR_ID_END = 0x1C
HEADER_QE_USER_DATA_START = 0x1C
HEADER_QE_USER_DATA_END = 0x30

# TD report offsets (relative to body start)
TD_TEE_TCB_SVN = (0x00, 0x10)
TD_MR_SEAM = (0x10, 0x40)
TD_MR_SIGNER_SEAM = (0x40, 0x70)
TD_SEAM_ATTRIBUTES = (0x70, 0x78)
TD_ATTRIBUTES = (0x78, 0x80)
TD_XFAM = (0x80, 0x88)
TD_MR_TD = (0x88, 0xB8)
TD_MR_CONFIG_ID = (0xB8, 0xE8)
TD_MR_OWNER = (0xE8, 0x118)
TD_MR_OWNER_CONFIG = (0x118, 0x148)
TD_RTMRS_START = 0x148
TD_REPORT_DATA = (0x208, 0x248)
TD_TEE_TCB_SVN_2 = (0x248, 0x258)
TD_MR_SERVICE_TD = (0x258, 0x288)

# QE report offsets (within certification data)
QE_MR_ENCLAVE = (0x40, 0x60)
QE_MR_SIGNER = (0x80, 0xA0)
QE_ISV_PROD_ID_START = 0x100
QE_ISV_SVN_START = 0x102
QE_REPORT_DATA = (0x140, 0x180)


def _field(data: bytes, span: tuple) -> bytes:
    return data[span[0]:span[1]]


# =============================================================================
# Data Structures
# =============================================================================

@dataclass
class TdxHeader:
    """
    Quote header (48 bytes).

    The trailing 20 bytes are owned by the Quoting Enclave and are not the
    application-chosen data; that lives in TdQuoteBody.report_data.
    """
    version: int
    attestation_key_type: int
    tee_type: int
    qe_vendor_id: bytes
    qe_user_data: bytes

    def __str__(self) -> str:
        return (
            f"TdxHeader(version={self.version}, "
            f"ak_type={self.attestation_key_type}, "
            f"tee_type=0x{self.tee_type:x}, "
            f"qe_vendor_id={self.qe_vendor_id.hex()})"
        )


@dataclass
class TdQuoteBody:
    """
    TD report carried by the quote.

    tee_tcb_svn_2 and mr_service_td are only present in TDX 1.5 reports
    (QuoteV5 with body type 3) and are empty otherwise.
    """
    tee_tcb_svn: bytes
    mr_seam: bytes
    mr_signer_seam: bytes
    seam_attributes: bytes
    td_attributes: bytes
    xfam: bytes
    mr_td: bytes
    mr_config_id: bytes
    mr_owner: bytes
    mr_owner_config: bytes
    rtmrs: List[bytes]
    report_data: bytes
    tee_tcb_svn_2: bytes = b""
    mr_service_td: bytes = b""

    def __str__(self) -> str:
        return (
            f"TdQuoteBody(mr_td={self.mr_td.hex()}, "
            f"mr_seam={self.mr_seam.hex()}, "
            f"report_data={self.report_data.hex()})"
        )


@dataclass
class QeReport:
    """Quoting Enclave report (384 bytes), signed by the PCK leaf key."""
    mr_enclave: bytes
    mr_signer: bytes
    isv_prod_id: int
    isv_svn: int
    report_data: bytes


@dataclass
class PckCertChainData:
    """PCK certificate chain in PEM form (certification data type 5)."""
    cert_type: int
    cert_data: bytes


@dataclass
class QeReportCertificationData:
    """
    QE report certification data (type 6).

    Carries the raw QE report, its signature, the QE authentication data and
    the nested PCK certificate chain.
    """
    qe_report: bytes
    qe_report_parsed: QeReport
    qe_report_signature: bytes
    qe_auth_data: bytes
    pck_cert_chain_data: PckCertChainData


@dataclass
class SignedData:
    """Quote signature, attestation public key and certification data."""
    signature: bytes  # R || S
    attestation_key: bytes  # X || Y
    qe_report_data: QeReportCertificationData

    def __str__(self) -> str:
        return (
            f"SignedData(signature={self.signature[:8].hex()}..., "
            f"attestation_key={self.attestation_key[:8].hex()}...)"
        )


@dataclass
class _QuoteBase:
    header: TdxHeader
    td_quote_body: TdQuoteBody
    signed_data: SignedData
    raw: bytes = field(repr=False)
    signed_region_end: int = field(repr=False)

    def user_data(self) -> bytes:
        """The 64-byte report_data field chosen by the attested application."""
        return self.td_quote_body.report_data

    def signed_message(self) -> bytes:
        """The raw bytes covered by the attestation key signature."""
        return self.raw[:self.signed_region_end]


@dataclass
class QuoteV4(_QuoteBase):
    """TDX quote, version 4."""

    @property
    def version(self) -> QuoteVersion:
        return QuoteVersion.V4


@dataclass
class QuoteV5(_QuoteBase):
    """TDX quote, version 5."""
    body_type: QuoteV5BodyType = QuoteV5BodyType.TDX_10

    @property
    def version(self) -> QuoteVersion:
        return QuoteVersion.V5


Quote = Union[QuoteV4, QuoteV5]


# =============================================================================
# Parsing Functions
# =============================================================================

class TdxQuoteParseError(Exception):
    """Raised when TDX quote parsing fails."""
    pass


def _parse_header(data: bytes) -> TdxHeader:
    if len(data) < HEADER_SIZE:
        raise TdxQuoteParseError(
            f"Header too short: {len(data)} bytes, expected {HEADER_SIZE}"
        )

    return TdxHeader(
        version=struct.unpack_from("<H", data, HEADER_VERSION_START)[0],
        attestation_key_type=struct.unpack_from("<H", data, HEADER_AK_TYPE_START)[0],
        tee_type=struct.unpack_from("<I", data, HEADER_TEE_TYPE_START)[0],
        qe_vendor_id=data[HEADER_QE_VENDOR_ID_START:HEADER_QE_VENDOR_ID_END],
        qe_user_data=data[HEADER_QE_USER_DATA_START:HEADER_QE_USER_DATA_END],
    )


def _validate_header(header: TdxHeader) -> None:
    if header.version not in (QuoteVersion.V4, QuoteVersion.V5):
        raise TdxQuoteParseError(
            f"Unsupported quote version: {header.version}"
        )

    if header.attestation_key_type != ATTESTATION_KEY_TYPE_ECDSA_P256:
        raise TdxQuoteParseError(
            f"Unsupported attestation key type: {header.attestation_key_type}. "
            f"Expected {ATTESTATION_KEY_TYPE_ECDSA_P256} (ECDSA-P256)."
        )

    if header.tee_type != TEE_TDX:
        raise TdxQuoteParseError(
            f"Invalid TEE type: 0x{header.tee_type:x}. Expected 0x{TEE_TDX:x} (TDX)."
        )

    if header.qe_vendor_id != INTEL_QE_VENDOR_ID:
        raise TdxQuoteParseError(
            f"Unknown QE vendor ID: {header.qe_vendor_id.hex()}. "
            f"Expected Intel QE: {INTEL_QE_VENDOR_ID.hex()}"
        )


def _parse_td_quote_body(data: bytes, size: int) -> TdQuoteBody:
    """
    Parse a TD report of the given size (584 for TDX 1.0, 648 for TDX 1.5).

    Raises:
        TdxQuoteParseError: If the data is shorter than size
    """
    if len(data) < size:
        raise TdxQuoteParseError(
            f"TD quote body too short: {len(data)} bytes, expected {size}"
        )

    rtmrs = [
        data[TD_RTMRS_START + i * RTMR_SIZE:TD_RTMRS_START + (i + 1) * RTMR_SIZE]
        for i in range(RTMR_COUNT)
    ]

    body = TdQuoteBody(
        tee_tcb_svn=_field(data, TD_TEE_TCB_SVN),
        mr_seam=_field(data, TD_MR_SEAM),
        mr_signer_seam=_field(data, TD_MR_SIGNER_SEAM),
        seam_attributes=_field(data, TD_SEAM_ATTRIBUTES),
        td_attributes=_field(data, TD_ATTRIBUTES),
        xfam=_field(data, TD_XFAM),
        mr_td=_field(data, TD_MR_TD),
        mr_config_id=_field(data, TD_MR_CONFIG_ID),
        mr_owner=_field(data, TD_MR_OWNER),
        mr_owner_config=_field(data, TD_MR_OWNER_CONFIG),
        rtmrs=rtmrs,
        report_data=_field(data, TD_REPORT_DATA),
    )
    if size == TD_QUOTE_BODY_V15_SIZE:
        body.tee_tcb_svn_2 = _field(data, TD_TEE_TCB_SVN_2)
        body.mr_service_td = _field(data, TD_MR_SERVICE_TD)
    return body


def _parse_qe_report(data: bytes) -> QeReport:
    if len(data) < QE_REPORT_SIZE:
        raise TdxQuoteParseError(
            f"QE report too short: {len(data)} bytes, expected {QE_REPORT_SIZE}"
        )

    return QeReport(
        mr_enclave=_field(data, QE_MR_ENCLAVE),
        mr_signer=_field(data, QE_MR_SIGNER),
        isv_prod_id=struct.unpack_from("<H", data, QE_ISV_PROD_ID_START)[0],
        isv_svn=struct.unpack_from("<H", data, QE_ISV_SVN_START)[0],
        report_data=_field(data, QE_REPORT_DATA),
    )


def _read_cert_data_header(data: bytes, what: str) -> tuple[int, bytes]:
    """Read a (type, size) certification data header and return (type, payload)."""
    if len(data) < CERT_DATA_HEADER_SIZE:
        raise TdxQuoteParseError(f"{what} too short for header")

    cert_type = struct.unpack_from("<H", data, 0)[0]
    cert_data_size = struct.unpack_from("<I", data, 2)[0]

    remaining = len(data) - CERT_DATA_HEADER_SIZE
    if remaining != cert_data_size:
        raise TdxQuoteParseError(
            f"{what} size mismatch: declared {cert_data_size} bytes, "
            f"but {remaining} bytes remain after header"
        )
    return cert_type, data[CERT_DATA_HEADER_SIZE:]


def _parse_qe_report_certification_data(data: bytes) -> QeReportCertificationData:
    """
    Parse QE report certification data (type 6).

    Structure:
        - QE Report: 384 bytes
        - QE Report Signature: 64 bytes
        - QE Auth Data Size: 2 bytes
        - QE Auth Data: variable
        - PCK Cert Chain Data: variable (nested type 5)
    """
    offset = 0

    if len(data) < offset + QE_REPORT_SIZE:
        raise TdxQuoteParseError("Data too short for QE report")
    qe_report_raw = data[offset:offset + QE_REPORT_SIZE]
    offset += QE_REPORT_SIZE

    if len(data) < offset + SIGNATURE_SIZE:
        raise TdxQuoteParseError("Data too short for QE report signature")
    qe_report_signature = data[offset:offset + SIGNATURE_SIZE]
    offset += SIGNATURE_SIZE

    if len(data) < offset + 2:
        raise TdxQuoteParseError("Data too short for QE auth data size")
    qe_auth_data_size = struct.unpack_from("<H", data, offset)[0]
    offset += 2

    if len(data) < offset + qe_auth_data_size:
        raise TdxQuoteParseError("Data too short for QE auth data")
    qe_auth_data = data[offset:offset + qe_auth_data_size]
    offset += qe_auth_data_size

    cert_type, cert_data = _read_cert_data_header(data[offset:], "PCK cert chain data")
    if cert_type != CERT_DATA_TYPE_PCK_CERT_CHAIN:
        raise TdxQuoteParseError(
            f"Expected PCK cert chain type {CERT_DATA_TYPE_PCK_CERT_CHAIN}, got {cert_type}"
        )

    return QeReportCertificationData(
        qe_report=qe_report_raw,
        qe_report_parsed=_parse_qe_report(qe_report_raw),
        qe_report_signature=qe_report_signature,
        qe_auth_data=qe_auth_data,
        pck_cert_chain_data=PckCertChainData(cert_type=cert_type, cert_data=cert_data),
    )


def _parse_signed_data(data: bytes) -> SignedData:
    """
    Parse the signed data section.

    Structure:
        - Signature: 64 bytes (ECDSA R || S)
        - Attestation Key: 64 bytes (raw P-256 public key)
        - Certification Data: variable, must be type 6
    """
    min_size = SIGNATURE_SIZE + ATTESTATION_KEY_SIZE + CERT_DATA_HEADER_SIZE
    if len(data) < min_size:
        raise TdxQuoteParseError(
            f"Signed data too short: {len(data)} bytes, minimum {min_size}"
        )

    signature = data[:SIGNATURE_SIZE]
    attestation_key = data[SIGNATURE_SIZE:SIGNATURE_SIZE + ATTESTATION_KEY_SIZE]

    cert_type, cert_data = _read_cert_data_header(
        data[SIGNATURE_SIZE + ATTESTATION_KEY_SIZE:], "Certification data"
    )
    if cert_type == CERT_DATA_TYPE_PCK_CERT_CHAIN:
        raise TdxQuoteParseError(
            "Certification data type 5 (direct PCK cert chain) is not supported; "
            "type 6 (QE report certification data) is required"
        )
    if cert_type != CERT_DATA_TYPE_QE_REPORT:
        raise TdxQuoteParseError(f"Unsupported certification data type: {cert_type}")

    return SignedData(
        signature=signature,
        attestation_key=attestation_key,
        qe_report_data=_parse_qe_report_certification_data(cert_data),
    )


def _read_signed_data(data: bytes, offset: int) -> tuple[SignedData, int]:
    """Parse the length-prefixed signed data at offset, returning it and its end."""
    if len(data) < offset + 4:
        raise TdxQuoteParseError("Quote truncated before signed data size")
    signed_data_size = struct.unpack_from("<I", data, offset)[0]
    start = offset + 4
    end = start + signed_data_size
    if len(data) < end:
        raise TdxQuoteParseError(
            f"Quote truncated: signed data size is {signed_data_size}, "
            f"but only {len(data) - start} bytes available"
        )
    return _parse_signed_data(data[start:end]), end


def _parse_v4(data: bytes, header: TdxHeader) -> QuoteV4:
    if len(data) < QUOTE_V4_MIN_SIZE:
        raise TdxQuoteParseError(
            f"Quote too short: {len(data)} bytes, minimum {QUOTE_V4_MIN_SIZE}"
        )
    body_end = HEADER_SIZE + TD_QUOTE_BODY_SIZE
    body = _parse_td_quote_body(data[HEADER_SIZE:body_end], TD_QUOTE_BODY_SIZE)
    signed_data, _ = _read_signed_data(data, body_end)
    return QuoteV4(
        header=header,
        td_quote_body=body,
        signed_data=signed_data,
        raw=data,
        signed_region_end=body_end,
    )


def _parse_v5(data: bytes, header: TdxHeader) -> QuoteV5:
    if len(data) < HEADER_SIZE + BODY_DESCRIPTOR_SIZE:
        raise TdxQuoteParseError("Quote truncated before body descriptor")

    raw_type = struct.unpack_from("<H", data, HEADER_SIZE)[0]
    body_size = struct.unpack_from("<I", data, HEADER_SIZE + 2)[0]
    try:
        body_type = QuoteV5BodyType(raw_type)
    except ValueError:
        raise TdxQuoteParseError(f"Unsupported QuoteV5 body type: {raw_type}") from None

    expected = TD_QUOTE_BODY_SIZE if body_type == QuoteV5BodyType.TDX_10 else TD_QUOTE_BODY_V15_SIZE
    if body_size != expected:
        raise TdxQuoteParseError(
            f"QuoteV5 body size {body_size} does not match body type {body_type.name} ({expected})"
        )

    body_start = HEADER_SIZE + BODY_DESCRIPTOR_SIZE
    body_end = body_start + body_size
    body = _parse_td_quote_body(data[body_start:body_end], body_size)
    signed_data, _ = _read_signed_data(data, body_end)
    return QuoteV5(
        header=header,
        td_quote_body=body,
        signed_data=signed_data,
        raw=data,
        signed_region_end=body_end,
        body_type=body_type,
    )


def parse_quote(data: bytes) -> Quote:
    """
    Parse a TDX attestation quote from raw bytes.

    Returns:
        QuoteV4 or QuoteV5 depending on the header version

    Raises:
        TdxQuoteParseError: If the bytes are not a well-formed quote of a
            known version
    """
    if not isinstance(data, (bytes, bytearray)):
        raise TdxQuoteParseError(f"Quote must be bytes, got {type(data).__name__}")
    data = bytes(data)

    header = _parse_header(data)
    _validate_header(header)

    if header.version == QuoteVersion.V4:
        return _parse_v4(data, header)
    return _parse_v5(data, header)
