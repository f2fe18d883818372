"""
Storage backends for certificates and ACME account state.

The variant is chosen once at process start: remote when a bucket is
configured, local otherwise.
"""

import logging

from config import ReconcilerConfig
from models.config import S3Config

from .base import (
    AccountNotFoundError,
    CertificateNotFoundError,
    RegistrationNotFoundError,
    StorageBackend,
    StorageError,
    StorageKind,
)
from .blob_store import BlobStore, BlobStoreError, S3BlobStore
from .local import LocalStorage
from .remote import RemoteStorage

logger = logging.getLogger(__name__)


def create_storage(config: ReconcilerConfig, s3: S3Config | None = None, orchestrator=None) -> StorageBackend:
    """Select the storage variant for this process."""
    if s3 is not None and s3.enabled:
        logger.info(f"Using remote storage: bucket={s3.bucket_name} prefix={config.service_name}")
        blob_store = S3BlobStore(s3.bucket_name, region=s3.region, endpoint=s3.endpoint)
        return RemoteStorage(config, blob_store, orchestrator=orchestrator)

    logger.info(f"Using local storage: certs={config.local_cert_dir}")
    return LocalStorage(config, orchestrator=orchestrator)


__all__ = [
    "AccountNotFoundError",
    "BlobStore",
    "BlobStoreError",
    "CertificateNotFoundError",
    "LocalStorage",
    "RegistrationNotFoundError",
    "RemoteStorage",
    "S3BlobStore",
    "StorageBackend",
    "StorageError",
    "StorageKind",
    "create_storage",
]
