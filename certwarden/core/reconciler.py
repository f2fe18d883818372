"""
Certificate lifecycle reconciler.

One reconciliation pass per domain group:

    load -> evaluate -> renew (if needed) -> guarantee non-empty
         -> publish to local disk -> persist to remote backend

Every failure has a fallback except publishing to the local certificate
directory, which raises ReconcileError.
"""

import logging

from config import ReconcilerConfig
from core import expiry_policy, self_signed
from core.cert_files import LocalCertificateDirectory
from core.renewal import RenewalError, RenewalOrchestrator
from core.self_signed import SelfSignedError
from core.storage.base import CertificateNotFoundError, StorageBackend, StorageError, StorageKind
from models.certificate import CertificateRecord, CertificateSource, DomainGroup, ReconcileResult, StepError

logger = logging.getLogger(__name__)


class ReconcileError(Exception):
    """Reconciliation could not leave certificate material on local disk."""

    def __init__(self, message: str, domain: str = None, step: str = None):
        self.message = message
        self.domain = domain
        self.step = step
        super().__init__(message)


class Reconciler:
    """Per-group decision engine over one storage backend."""

    def __init__(
        self,
        storage: StorageBackend,
        config: ReconcilerConfig,
        orchestrator: RenewalOrchestrator | None = None,
        cert_files: LocalCertificateDirectory | None = None,
    ):
        self.storage = storage
        self.config = config
        self.orchestrator = orchestrator or RenewalOrchestrator(challenge_port=config.http_challenge_port)
        self.cert_files = cert_files or LocalCertificateDirectory(config.local_cert_dir)

    def _fail(self, result_errors: list[StepError], group: DomainGroup, step: str, message: str) -> None:
        logger.error(f"[{group.root}] {step} failed for {group.domains}: {message}")
        result_errors.append(StepError(step=step, message=message))

    async def _load(self, group: DomainGroup, errors: list[StepError]) -> CertificateRecord:
        try:
            return await self.storage.download_certificate(group.root)
        except CertificateNotFoundError as e:
            logger.info(f"[{group.root}] load: no cached certificate ({e.message})")
        except StorageError as e:
            self._fail(errors, group, "load", e.message)
        return CertificateRecord.empty(group.root)

    async def reconcile(self, group: DomainGroup) -> ReconcileResult:
        """
        Run one reconciliation pass for a domain group.

        Returns:
            ReconcileResult describing what was published

        Raises:
            ReconcileError: if certificate material cannot be written locally
        """
        root = group.root
        errors: list[StepError] = []
        logger.debug(f"[{root}] Starting certificate check for {group.domains}")

        # 1. Load
        record = await self._load(group, errors)
        source = CertificateSource.CACHED

        # 2. Evaluate
        decision = expiry_policy.evaluate(record, self.config.renewal_window_days)
        if decision.error and record.is_valid:
            # Undecodable material is never republished
            errors.append(StepError(step="evaluate", message=decision.error))
            record = CertificateRecord.empty(root)

        # 3. Renew
        renewed = False
        if decision.should_renew:
            try:
                record = await self.orchestrator.renew(
                    self.config.contact_email, group, self.config.ca_authority, self.storage
                )
                renewed = True
                source = CertificateSource.RENEWED
            except RenewalError as e:
                self._fail(errors, group, "renew", e.message)

        # 4. Guarantee non-empty
        if not record.is_valid:
            logger.warning(f"[{root}] No usable certificate after renewal, creating a self-signed certificate")
            validity = self_signed.fallback_validity_days(self.config.renewal_window_days)
            try:
                record = self_signed.generate(root, validity_days=validity)
            except SelfSignedError as e:
                raise ReconcileError(e.message, domain=root, step="self_signed") from e
            source = CertificateSource.SELF_SIGNED

        # 5. Publish
        try:
            cert_path, key_path = self.cert_files.replace(record)
        except OSError as e:
            raise ReconcileError(f"error writing certificate to disk for {root}: {e}", domain=root, step="publish") from e

        # 6. Persist to backend
        if renewed and self.storage.kind == StorageKind.REMOTE:
            try:
                await self.storage.save_certificate(root, record.certificate, record.private_key)
            except StorageError as e:
                self._fail(errors, group, "persist", e.message)

        if renewed:
            remaining = expiry_policy.evaluate(record, self.config.renewal_window_days).remaining_days
        elif source == CertificateSource.CACHED:
            remaining = decision.remaining_days
        else:
            remaining = None

        if source == CertificateSource.SELF_SIGNED:
            logger.warning(f"[{root}] Serving self-signed certificate for {group.domains} (degraded)")
        else:
            logger.info(f"[{root}] Published {source.value} certificate for {group.domains}")

        return ReconcileResult(
            domain_root=root,
            source=source,
            renewed=renewed,
            remaining_days=remaining,
            cert_path=str(cert_path),
            key_path=str(key_path),
            errors=errors,
        )
