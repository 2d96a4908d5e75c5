"""
TLS certificate validation.

Certificates and keys are supplied by an external provider at known
locations. stackpilot never generates or copies key material; it only
checks that the certificate is still valid and that the key belongs to it,
and records certificate metadata (never key bytes) in checkpoints.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from pydantic import BaseModel, Field

from stackpilot.errors import ValidationError
from stackpilot.logging import get_logger

logger = get_logger(__name__)


class CertificateMetadata(BaseModel):
    """Non-secret description of a certificate."""

    path: str = Field(description="Certificate file path")
    subject: str = Field(description="RFC 4514 subject")
    issuer: str = Field(description="RFC 4514 issuer")
    not_before: datetime = Field(description="Start of validity")
    not_after: datetime = Field(description="End of validity")
    fingerprint_sha256: str = Field(description="Hex SHA-256 fingerprint")

    def days_remaining(self, now: datetime | None = None) -> int:
        return (self.not_after - (now or datetime.now(UTC))).days


def _load_certificate(path: Path) -> x509.Certificate:
    if not path.is_file():
        raise ValidationError(
            f"Certificate not found: {path}",
            details={"path": str(path)},
        )
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError as e:
        raise ValidationError(
            f"Certificate is not valid PEM: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e


def inspect_certificate(path: Path | str) -> CertificateMetadata:
    """
    Read certificate metadata.

    Args:
        path: PEM certificate (the first certificate of a chain is used).

    Returns:
        CertificateMetadata.

    Raises:
        ValidationError: If the file is missing or not a PEM certificate.
    """
    path = Path(path)
    cert = _load_certificate(path)
    return CertificateMetadata(
        path=str(path),
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        fingerprint_sha256=cert.fingerprint(hashes.SHA256()).hex(),
    )


def validate_certificate_pair(
    cert_path: Path | str,
    key_path: Path | str,
    *,
    warn_days: int = 30,
    now: datetime | None = None,
) -> CertificateMetadata:
    """
    Check certificate expiry and certificate/key correspondence.

    Args:
        cert_path: PEM certificate.
        key_path: PEM private key (unencrypted).
        warn_days: Log a warning when fewer days of validity remain.
        now: Reference time (defaults to the current time).

    Returns:
        Metadata of the validated certificate.

    Raises:
        ValidationError: If the certificate is expired, the key is missing or
            unreadable, or the key does not match the certificate.
    """
    cert_path = Path(cert_path)
    key_path = Path(key_path)
    now = now or datetime.now(UTC)

    cert = _load_certificate(cert_path)
    metadata = inspect_certificate(cert_path)

    if metadata.not_after <= now:
        raise ValidationError(
            f"Certificate expired on {metadata.not_after.isoformat()}",
            details={"path": str(cert_path), "not_after": metadata.not_after.isoformat()},
        )

    if not key_path.is_file():
        raise ValidationError(
            f"Private key not found: {key_path}",
            details={"path": str(key_path)},
        )
    try:
        key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
    except (ValueError, TypeError) as e:
        raise ValidationError(
            f"Private key is not readable: {key_path}",
            details={"path": str(key_path), "error": str(e)},
        ) from e

    public_format = serialization.PublicFormat.SubjectPublicKeyInfo
    cert_public = cert.public_key().public_bytes(serialization.Encoding.DER, public_format)
    key_public = key.public_key().public_bytes(serialization.Encoding.DER, public_format)
    if cert_public != key_public:
        raise ValidationError(
            "Private key does not match certificate",
            details={"cert_path": str(cert_path), "key_path": str(key_path)},
        )

    days = metadata.days_remaining(now)
    if days < warn_days:
        logger.warning(
            f"Certificate expires in {days} days",
            extra={"path": str(cert_path), "not_after": metadata.not_after.isoformat()},
        )
    else:
        logger.info(
            "Certificate is valid",
            extra={"path": str(cert_path), "days_remaining": days},
        )
    return metadata
