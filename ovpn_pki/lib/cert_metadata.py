"""Certificate subject parsing and metadata extraction."""

import re
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from cryptography import x509

from .errors import SubjectParseError
from .models import CertificateMetadata

if TYPE_CHECKING:
    from .toolkit import PKIToolkit

PEM_CERT_MARKER = b"-----BEGIN CERTIFICATE-----"

# "Subject: C = US, CN = alice" (text dump) or "subject=CN = alice" (-subject)
_SUBJECT_LINE = re.compile(r"^\s*subject\s*[:=]\s*(?P<subject>.*)$", re.IGNORECASE)


def parse_subject(text: str) -> dict[str, str]:
    """Parse the subject line of OpenSSL output into attribute name -> value.

    Accepts the comma-separated form (``CN = alice, O = Example``) and the
    legacy slash form (``/CN=alice/O=Example``). When an attribute repeats, the
    last occurrence wins.

    Args:
        text: Output of ``openssl x509|req -noout -text`` or ``-subject``

    Returns:
        Mapping of attribute short names to values

    Raises:
        SubjectParseError: If no subject line is present
    """
    for line in text.splitlines():
        match = _SUBJECT_LINE.match(line)
        if match:
            return _split_attributes(match.group("subject").strip())
    raise SubjectParseError("no Subject line in certificate introspection output")


def _split_attributes(subject: str) -> dict[str, str]:
    if subject.startswith("/"):
        parts = subject.strip("/").split("/")
    else:
        parts = subject.split(",")

    attributes: dict[str, str] = {}
    for part in parts:
        key, sep, value = part.partition("=")
        if not sep:
            continue
        attributes[key.strip()] = value.strip()
    return attributes


def common_name(attributes: dict[str, str]) -> str:
    """Return the CN attribute.

    Raises:
        SubjectParseError: If CN is absent or empty
    """
    cn = attributes.get("CN", "")
    if not cn:
        raise SubjectParseError(f"subject has no CN attribute: {attributes}")
    return cn


def read_common_name(toolkit: "PKIToolkit", path: Path) -> str:
    """Return the Common Name of a certificate or request file via the toolkit."""
    return common_name(parse_subject(toolkit.describe(path)))


def get_certificate_serial_hex(cert: x509.Certificate) -> str:
    """Return certificate serial number as hex with colons (e.g., 3A:F2:B1:...)."""
    serial_hex = f"{cert.serial_number:X}"
    if len(serial_hex) % 2 != 0:
        serial_hex = "0" + serial_hex
    return ":".join(serial_hex[i : i + 2] for i in range(0, len(serial_hex), 2))


def load_certificate(pem_data: bytes) -> x509.Certificate:
    """Load a PEM certificate, skipping any text dump Easy-RSA puts before it.

    Raises:
        ValueError: If no PEM certificate block is present
    """
    start = pem_data.find(PEM_CERT_MARKER)
    if start < 0:
        raise ValueError("no PEM certificate block found")
    return x509.load_pem_x509_certificate(pem_data[start:])


def extract_certificate_metadata(
    pem_data: bytes, status: Literal["active", "revoked"] = "active"
) -> CertificateMetadata:
    """Extract the sidecar metadata record for a signed certificate.

    Args:
        pem_data: Certificate file contents
        status: Lifecycle status to record

    Returns:
        CertificateMetadata with serialNumber, commonName, validity, issuedAt, status
    """
    cert = load_certificate(pem_data)
    cn_attributes = cert.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
    if not cn_attributes:
        raise SubjectParseError("certificate subject has no CN attribute")
    cn = cn_attributes[0].value
    if not isinstance(cn, str):
        raise ValueError("CN must be string")

    return CertificateMetadata(
        serialNumber=get_certificate_serial_hex(cert),
        commonName=cn,
        notBefore=cert.not_valid_before_utc.isoformat(),
        expiry=cert.not_valid_after_utc.isoformat(),
        issuedAt=datetime.now(UTC).isoformat(),
        status=status,
    )
