"""
Expiry policy for cached certificates.

Decides whether a certificate must be renewed from its embedded
validity end date. Anything that cannot be decoded is renewed.
"""

import logging
import re
from datetime import datetime, timezone

from cryptography import x509

from models.certificate import CertificateRecord, ExpiryDecision

logger = logging.getLogger(__name__)

DEFAULT_RENEWAL_WINDOW_DAYS = 60

_PEM_BEGIN = re.compile(rb"-----BEGIN ([A-Z0-9 ]+)-----")


class CertificateDecodeError(Exception):
    """Certificate bytes are not a usable PEM X.509 certificate."""

    def __init__(self, message: str, domain: str = None):
        self.message = message
        self.domain = domain
        super().__init__(message)


def parse_certificate(cert_pem: bytes) -> x509.Certificate:
    """
    Parse the first PEM block of a certificate bundle.

    Raises CertificateDecodeError when the bytes are empty, the first
    block is not a CERTIFICATE block, or its DER does not parse.
    """
    if not cert_pem:
        raise CertificateDecodeError("failed to decode PEM certificate: no certificate bytes")

    match = _PEM_BEGIN.search(cert_pem)
    if match is None:
        raise CertificateDecodeError("failed to decode PEM certificate: no PEM block found")
    if match.group(1) != b"CERTIFICATE":
        block_type = match.group(1).decode("ascii")
        raise CertificateDecodeError(f"failed to decode PEM certificate: block type is '{block_type}'")

    try:
        return x509.load_pem_x509_certificate(cert_pem[match.start() :])
    except ValueError as e:
        raise CertificateDecodeError(f"error parsing certificate: {e}")


def remaining_days(not_after: datetime, now: datetime | None = None) -> int:
    """Whole days until not_after, truncated toward zero."""
    now = now or datetime.now(timezone.utc)
    return int((not_after - now).total_seconds() / 86400)


def evaluate(
    record: CertificateRecord,
    renewal_window_days: int = DEFAULT_RENEWAL_WINDOW_DAYS,
    now: datetime | None = None,
) -> ExpiryDecision:
    """
    Decide renew-or-keep for a certificate record.

    Args:
        record: Cached record, possibly empty or malformed
        renewal_window_days: Renew when this many days or fewer remain
        now: Reference time (defaults to the current UTC time)

    Returns:
        ExpiryDecision with the remaining days for observability
    """
    if not record.is_valid:
        return ExpiryDecision(should_renew=True, error="certificate record is empty")

    try:
        cert = parse_certificate(record.certificate)
    except CertificateDecodeError as e:
        logger.warning(f"Cannot decode cached certificate for {record.domain_root}, forcing renewal: {e.message}")
        return ExpiryDecision(should_renew=True, error=e.message)

    not_after = cert.not_valid_after_utc
    days_left = remaining_days(not_after, now)
    should_renew = days_left <= renewal_window_days

    logger.debug(
        f"Certificate expiry for {record.domain_root}: not_after={not_after.isoformat()} "
        f"remaining_days={days_left} renewal_window_days={renewal_window_days}"
    )
    if should_renew:
        logger.info(f"Only {days_left} days until TLS cert expiration for {record.domain_root}")
    else:
        logger.debug(
            f"Certificate for {record.domain_root} is still valid for {days_left} days. "
            f"Days remaining until renewal: {days_left - renewal_window_days}"
        )

    return ExpiryDecision(remaining_days=days_left, should_renew=should_renew, not_after=not_after)


def should_renew(record: CertificateRecord, renewal_window_days: int = DEFAULT_RENEWAL_WINDOW_DAYS) -> bool:
    """Whether the record must be replaced."""
    return evaluate(record, renewal_window_days).should_renew


def check_renewal_window(days: int) -> None:
    """Warn loudly at startup when the window risks upstream rate limits."""
    if days < DEFAULT_RENEWAL_WINDOW_DAYS:
        logger.warning(
            f"YOU ARE IN DANGER OF HITTING LET'S ENCRYPT RATE LIMITS. PLEASE ADJUST renewal_window_days "
            f"(currently {days}, recommended >= {DEFAULT_RENEWAL_WINDOW_DAYS})"
        )
    else:
        logger.debug(f"renewal_window_days set to {days}")
