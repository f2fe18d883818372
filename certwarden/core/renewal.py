"""
Renewal orchestrator.

Drives the ACME issuer to obtain a new certificate for a domain group:
resolves (or lazily creates) the shared account identity, ensures the
account is registered, serves HTTP-01 challenges and requests issuance.
Never retries; the scheduler's next periodic pass is the retry policy.
"""

import logging

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from core.acme_service import ACMEIssuer
from core.challenge_server import DEFAULT_CHALLENGE_PORT, ChallengeResponder
from core.expiry_policy import CertificateDecodeError, parse_certificate, remaining_days
from core.storage.base import StorageBackend, StorageError
from models.certificate import AccountIdentity, CertificateRecord, DomainGroup
from models.config import LETSENCRYPT_PRODUCTION_URL, LETSENCRYPT_STAGING_URL

logger = logging.getLogger(__name__)


class RenewalError(Exception):
    """Renewal failed; the underlying cause is chained."""

    def __init__(self, message: str, domain: str = None, suggestion: str = None):
        self.message = message
        self.domain = domain
        self.suggestion = suggestion
        super().__init__(message)


def generate_account_key() -> str:
    """New EC P-256 account key as PKCS#8 PEM."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def log_ca_authority(ca_url: str) -> None:
    if ca_url == LETSENCRYPT_PRODUCTION_URL:
        logger.warning(f"Using Let's Encrypt PRODUCTION CA authority: {ca_url}")
    elif ca_url == LETSENCRYPT_STAGING_URL:
        logger.info(f"Using Let's Encrypt staging CA authority: {ca_url}")
    else:
        logger.warning(f"Unknown CA authority: {ca_url}")


class RenewalOrchestrator:
    """
    Obtains certificates from an ACME CA.

    The account identity and registration are borrowed from the storage
    backend for the duration of one renewal.
    """

    def __init__(self, challenge_port: int = DEFAULT_CHALLENGE_PORT, issuer_factory=None, responder_factory=None):
        self.challenge_port = challenge_port
        self.issuer_factory = issuer_factory or ACMEIssuer
        self.responder_factory = responder_factory or ChallengeResponder
        self._logged_authorities: set[str] = set()

    async def _resolve_identity(self, email: str, storage: StorageBackend) -> tuple[AccountIdentity, bool]:
        """Load the identity for email, creating one when absent. Returns (identity, created)."""
        try:
            identity = await storage.load_account_identity(email)
            logger.debug(f"ACME account identity loaded for {email}")
            return identity, False
        except StorageError as e:
            logger.warning(f"Error loading ACME account identity for {email}, creating a new one: {e.message}")

        identity = AccountIdentity(email=email, private_key_pem=generate_account_key())
        logger.debug(f"New ACME account identity created for {email}")
        try:
            await storage.save_account_identity(identity)
        except StorageError as e:
            # Renewal continues with the in-memory identity for this pass
            logger.error(f"Error saving ACME account identity for {email}: {e.message}")
        return identity, True

    async def _ensure_registration(
        self, issuer: ACMEIssuer, identity: AccountIdentity, created: bool, storage: StorageBackend
    ) -> None:
        """Bind an existing registration or register the account once."""
        registration = identity.registration
        if registration is None and not created:
            try:
                registration = await storage.load_registration()
            except StorageError as e:
                logger.info(f"No stored ACME registration, registering with ACME server: {e.message}")

        if registration is not None:
            await issuer.use_registration(registration)
            return

        registration = await issuer.register(identity.email)
        try:
            await storage.save_registration(registration)
        except StorageError as e:
            raise RenewalError(f"Error saving registration: {e.message}", suggestion="Check storage access") from e
        await issuer.use_registration(registration)

    async def renew(
        self, contact_email: str, domain_group: DomainGroup, ca_url: str, storage: StorageBackend
    ) -> CertificateRecord:
        """
        Obtain a new certificate for the whole domain group.

        Args:
            contact_email: ACME account contact
            domain_group: Ordered domains, the root is the primary subject
            ca_url: ACME directory URL
            storage: Backend holding account identity and registration

        Returns:
            CertificateRecord keyed by the domain root

        Raises:
            RenewalError: on any failure, with the underlying cause chained
        """
        root = domain_group.root
        if ca_url not in self._logged_authorities:
            log_ca_authority(ca_url)
            self._logged_authorities.add(ca_url)

        logger.info(f"Renewing ACME certificate for {domain_group.domains}")
        try:
            identity, created = await self._resolve_identity(contact_email, storage)
            account_key = serialization.load_pem_private_key(identity.private_key_pem.encode("utf-8"), password=None)

            async with self.responder_factory(port=self.challenge_port) as responder:
                issuer = self.issuer_factory(ca_url, account_key, responder)
                await self._ensure_registration(issuer, identity, created, storage)
                issued = await issuer.obtain_certificate(list(domain_group.domains))
        except RenewalError as e:
            e.domain = root
            raise
        except Exception as e:
            message = getattr(e, "message", None) or str(e) or type(e).__name__
            raise RenewalError(
                f"Error while generating TLS certificate for {domain_group.domains}: {message}",
                domain=root,
                suggestion=getattr(e, "suggestion", None),
            ) from e

        record = CertificateRecord(domain_root=root, certificate=issued.certificate, private_key=issued.private_key)
        if not record.is_valid:
            raise RenewalError(f"CA returned an empty certificate bundle for {root}", domain=root)

        try:
            cert = parse_certificate(record.certificate)
        except CertificateDecodeError as e:
            raise RenewalError(f"Error while parsing renewed certificate for {root}: {e.message}", domain=root) from e

        logger.info(
            f"The certificate for {root} was renewed, days remaining until expiry: "
            f"{remaining_days(cert.not_valid_after_utc)}"
        )
        return record
