"""
Remote (object storage) backend.

Every key is prefixed with the configured service name so several
services can share one bucket:

    <prefix>/certs/<domain_root>/cert.pem
    <prefix>/certs/<domain_root>/privkey.pem
    <prefix>/certs/registration.json
    <prefix>/<email>.json
    <prefix>/<email>.pem
"""

import asyncio
import logging
import posixpath

from config import ReconcilerConfig
from core.cert_files import CERT_FILENAME, KEY_FILENAME
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
from core.storage.blob_store import BlobStore, BlobStoreError
from models.certificate import AccountIdentity, CertificateRecord, DomainGroup, ReconcileResult, Registration

logger = logging.getLogger(__name__)


class RemoteStorage:
    """Storage backend persisting to a blob store bucket."""

    kind = StorageKind.REMOTE

    def __init__(self, config: ReconcilerConfig, blob_store: BlobStore, orchestrator=None):
        self.config = config
        self.blob_store = blob_store
        self.prefix = config.service_name.strip("/")
        self._orchestrator = orchestrator
        self._reconciler = None

        log_identity = getattr(blob_store, "log_caller_identity", None)
        if log_identity is not None:
            log_identity()

    def _key(self, *parts: str) -> str:
        return posixpath.join(self.prefix, *parts)

    def cert_keys(self, domain_root: str) -> tuple[str, str]:
        return self._key("certs", domain_root, CERT_FILENAME), self._key("certs", domain_root, KEY_FILENAME)

    def registration_key(self) -> str:
        return self._key("certs", "registration.json")

    def identity_keys(self, email: str) -> tuple[str, str]:
        return self._key(f"{email}.json"), self._key(f"{email}.pem")

    async def _put(self, key: str, data: bytes) -> None:
        try:
            await asyncio.to_thread(self.blob_store.put, key, data)
        except BlobStoreError as e:
            raise StorageError(e.message, key=key) from e

    async def _get(self, key: str) -> bytes | None:
        try:
            return await asyncio.to_thread(self.blob_store.get, key)
        except BlobStoreError as e:
            raise StorageError(e.message, key=key) from e

    async def save_certificate(self, domain_root: str, cert: bytes, key: bytes) -> None:
        """
        Upload certificate then key as two independent writes.

        A failed key upload leaves the new certificate next to the previous
        key; it is not compensated and the next renewal overwrites both.
        """
        cert_key, privkey_key = self.cert_keys(domain_root)
        await self._put(cert_key, cert)
        try:
            await self._put(privkey_key, key)
        except StorageError as e:
            logger.error(
                f"Uploaded certificate but not private key for {domain_root}; "
                f"{cert_key} is paired with a stale or absent key until the next renewal"
            )
            raise StorageError(f"error uploading private key for {domain_root}: {e.message}", key=privkey_key) from e
        logger.debug(f"Successfully uploaded the renewed certificate for {domain_root}")

    async def download_certificate(self, domain_root: str) -> CertificateRecord:
        cert_key, privkey_key = self.cert_keys(domain_root)
        logger.debug(f"Downloading certificate for {domain_root}: {cert_key}")

        cert_pem = await self._get(cert_key)
        if not cert_pem:
            raise CertificateNotFoundError(f"certificate not found at {cert_key}", key=cert_key)
        logger.debug(f"certificate downloaded: key={cert_key} size={len(cert_pem)}")

        key_pem = await self._get(privkey_key)
        if not key_pem:
            raise CertificateNotFoundError(f"private key not found at {privkey_key}", key=privkey_key)
        logger.debug(f"private key downloaded: key={privkey_key} size={len(key_pem)}")

        return CertificateRecord(domain_root=domain_root, certificate=cert_pem, private_key=key_pem)

    async def load_account_identity(self, email: str) -> AccountIdentity:
        json_key, pem_key = self.identity_keys(email)
        identity_json = await self._get(json_key)
        if not identity_json:
            raise AccountNotFoundError(f"account identity not found at {json_key}", key=json_key)
        key_pem = await self._get(pem_key)
        if not key_pem:
            raise AccountNotFoundError(f"account private key not found at {pem_key}", key=pem_key)

        identity = identity_from_parts(email, identity_json, key_pem)
        if identity.registration is None:
            try:
                identity = identity.model_copy(update={"registration": await self.load_registration()})
            except StorageError as e:
                logger.warning(f"error loading registration: {e.message}")
        return identity

    async def save_account_identity(self, identity: AccountIdentity) -> None:
        json_key, pem_key = self.identity_keys(identity.email)
        await self._put(json_key, identity_to_json(identity))
        await self._put(pem_key, identity.private_key_pem.encode("utf-8"))

    async def load_registration(self) -> Registration:
        key = self.registration_key()
        data = await self._get(key)
        if not data:
            raise RegistrationNotFoundError(f"registration not found at {key}", key=key)
        return registration_from_json(data)

    async def save_registration(self, registration: Registration) -> None:
        await self._put(self.registration_key(), registration.model_dump_json().encode("utf-8"))

    async def reconcile(self, domain_group: DomainGroup) -> ReconcileResult:
        if self._reconciler is None:
            from core.reconciler import Reconciler

            self._reconciler = Reconciler(self, self.config, self._orchestrator)
        return await self._reconciler.reconcile(domain_group)
