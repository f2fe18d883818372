"""
Local filesystem storage backend.

Certificates live in the local certificate directory; the account
identity and registration files are stored flat in the config directory.
"""

import logging
from pathlib import Path

from config import ReconcilerConfig
from core.cert_files import LocalCertificateDirectory
from core.storage.base import (
    AccountNotFoundError,
    CertificateNotFoundError,
    RegistrationNotFoundError,
    StorageError,
    StorageKind,
    identity_from_parts,
    identity_to_json,
    registration_from_json,
)
from models.certificate import AccountIdentity, CertificateRecord, DomainGroup, ReconcileResult, Registration

logger = logging.getLogger(__name__)

REGISTRATION_FILENAME = "registration.json"


class LocalStorage:
    """Storage backend persisting everything on the local filesystem."""

    kind = StorageKind.LOCAL

    def __init__(self, config: ReconcilerConfig, orchestrator=None):
        self.config = config
        self.config_dir = Path(config.config_dir)
        self.cert_files = LocalCertificateDirectory(config.local_cert_dir)
        self._orchestrator = orchestrator
        self._reconciler = None

    def _identity_paths(self, email: str) -> tuple[Path, Path]:
        return self.config_dir / f"{email}.json", self.config_dir / f"{email}.pem"

    async def save_certificate(self, domain_root: str, cert: bytes, key: bytes) -> None:
        # Renewal failures fall through to self-signed material written straight to disk
        raise NotImplementedError("save_certificate is not implemented for local storage")

    async def download_certificate(self, domain_root: str) -> CertificateRecord:
        """Read cert.pem and privkey.pem from the domain root's directory."""
        try:
            record = self.cert_files.read(domain_root)
        except OSError as e:
            raise StorageError(f"error reading certificate for {domain_root}: {e}", key=domain_root)
        if record is None:
            raise CertificateNotFoundError(
                f"certificate not found in {self.cert_files.cert_dir(domain_root)}", key=domain_root
            )
        return record

    async def load_account_identity(self, email: str) -> AccountIdentity:
        json_path, key_path = self._identity_paths(email)
        try:
            identity_json = json_path.read_bytes()
            key_pem = key_path.read_bytes()
        except FileNotFoundError as e:
            raise AccountNotFoundError(f"error reading account file: {e}", key=email)
        except OSError as e:
            raise StorageError(f"error reading account files for {email}: {e}", key=email)

        identity = identity_from_parts(email, identity_json, key_pem)
        if identity.registration is None:
            try:
                identity = identity.model_copy(update={"registration": await self.load_registration()})
            except StorageError as e:
                logger.warning(f"error loading registration: {e.message}")
        return identity

    async def save_account_identity(self, identity: AccountIdentity) -> None:
        json_path, key_path = self._identity_paths(identity.email)
        logger.debug(f"Saving ACME account identity for {identity.email}")
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            json_path.write_bytes(identity_to_json(identity))
            key_path.write_text(identity.private_key_pem)
            key_path.chmod(0o600)
        except OSError as e:
            raise StorageError(f"error writing account identity to file: {e}", key=identity.email)

    async def load_registration(self) -> Registration:
        path = self.config_dir / REGISTRATION_FILENAME
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise RegistrationNotFoundError(f"registration not found at {path}", key=str(path))
        except OSError as e:
            raise StorageError(f"error reading registration: {e}", key=str(path))
        return registration_from_json(data)

    async def save_registration(self, registration: Registration) -> None:
        path = self.config_dir / REGISTRATION_FILENAME
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(registration.model_dump_json())
            path.chmod(0o600)
        except OSError as e:
            raise StorageError(f"error writing registration: {e}", key=str(path))

    async def reconcile(self, domain_group: DomainGroup) -> ReconcileResult:
        if self._reconciler is None:
            from core.reconciler import Reconciler

            self._reconciler = Reconciler(self, self.config, self._orchestrator)
        return await self._reconciler.reconcile(domain_group)
