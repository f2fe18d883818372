"""
Self-signed fallback certificates.

Used as a stop-gap when no cached or ACME-issued certificate is available,
so the TLS terminator always has some material to serve.
"""

import logging
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from models.certificate import CertificateRecord

logger = logging.getLogger(__name__)

DEFAULT_VALIDITY_DAYS = 30


class SelfSignedError(Exception):
    """Self-signed certificate generation failed."""

    def __init__(self, message: str, domain: str = None):
        self.message = message
        self.domain = domain
        super().__init__(message)


def fallback_validity_days(renewal_window_days: int) -> int:
    """Validity strictly shorter than the renewal window, so the next pass replaces it."""
    return max(1, min(DEFAULT_VALIDITY_DAYS, renewal_window_days - 1))


def generate(domain_root: str, validity_days: int = DEFAULT_VALIDITY_DAYS) -> CertificateRecord:
    """
    Generate a key pair and a certificate self-signed by it.

    Args:
        domain_root: Subject common name and only SAN
        validity_days: Days until the certificate expires

    Returns:
        CertificateRecord with PEM certificate and PKCS#8 PEM key
    """
    try:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain_root)])
        now = datetime.now(timezone.utc)

        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(private_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(now + timedelta(days=validity_days))
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain_root)]), critical=False)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .sign(private_key, hashes.SHA256())
        )
    except ValueError as e:
        raise SelfSignedError(f"Error generating self-signed certificate for {domain_root}: {e}", domain=domain_root)

    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )

    logger.info(f"Generated self-signed certificate for {domain_root} valid for {validity_days} days")
    return CertificateRecord(domain_root=domain_root, certificate=cert_pem, private_key=key_pem)
